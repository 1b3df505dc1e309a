#!/usr/bin/env python3
"""
YACU - Yet Another Container Updater
Periodically replaces containers running outdated images

Startup:
1. Load configuration (missing file = defaults, invalid file = exit 1)
2. Configure logging
3. Connect to the local Docker engine and open the database
4. Configure notification sinks
5. Run the update schedule forever (or a single batch with --once)
"""

import argparse
import asyncio
import logging
import sys

import docker
from docker.errors import DockerException

from config.paths import DEFAULT_CONFIG_PATH
from config.settings import AppConfig, ConfigError, load_config, setup_logging
from database import DatabaseManager
from docker_monitor.periodic_jobs import PeriodicJobsManager
from notifications import DiscordWebhookNotifier, Notifications, SinkGates
from updates.freshness_cache import FreshnessCache
from updates.image_cleanup import ImageCleanup
from updates.registry_adapter import get_registry_adapter
from updates.update_checker import UpdateChecker
from updates.update_executor import UpdateExecutor

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="yacu", description="Yet Another Container Updater")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config file. By default checks for 'yacu.yaml' in current directory.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single update cycle immediately and exit.",
    )
    return parser.parse_args(argv)


def build_notifications(config: AppConfig) -> Notifications:
    """Create the configured notification sinks"""
    notifications = Notifications()
    for kind, webhook in config.webhooks.items():
        if kind != "discord":
            logger.warning(f"Unsupported webhook kind '{kind}', ignoring it")
            continue
        if not webhook.url.strip():
            continue

        notifier = DiscordWebhookNotifier(
            webhook.url,
            author_name=webhook.author.name,
            author_url=webhook.author.url,
            author_icon_url=webhook.author.icon_url,
        )
        notifications.add(notifier, SinkGates(
            errors=webhook.kind.errors,
            image_success=webhook.kind.image_success,
            container_success=webhook.kind.container_success,
        ))
        logger.debug("Discord webhook client initialized")
    return notifications


def build_jobs(config: AppConfig, client, db: DatabaseManager, notifications: Notifications) -> PeriodicJobsManager:
    """Wire scanner, executor and reclaimer together"""
    cache = FreshnessCache(db, get_registry_adapter(), config.registries)
    checker = UpdateChecker(client, cache, notifications, config.scanner, config.updater.stop_timeout)
    executor = UpdateExecutor(
        client,
        cache,
        notifications,
        ImageCleanup(client, notifications),
        config.updater,
        config.scanner.image_age,
        registries=config.registries,
    )
    return PeriodicJobsManager(checker, executor, notifications, config.scanner.interval)


async def run(config: AppConfig, once: bool = False) -> int:
    try:
        client = docker.from_env()
    except DockerException as e:
        logger.critical(f"Creating local docker engine client failed: {e}")
        return 1
    logger.debug("Docker engine client initialized")

    db = DatabaseManager(config.database.path)
    notifications = build_notifications(config)
    jobs = build_jobs(config, client, db, notifications)
    logger.info("Initialization completed")

    try:
        if once:
            await jobs.run_update_cycle()
        else:
            await jobs.run_forever()
    finally:
        await notifications.close()
        db.close()
        client.close()
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.critical(f"Failed to setup configuration: {e}")
        return 1

    setup_logging(config.logging)
    logger.debug(f"Config loaded from {args.config}")

    try:
        return asyncio.run(run(config, once=args.once))
    except KeyboardInterrupt:
        logger.info("Shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
