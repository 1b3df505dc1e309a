"""
Unit tests for the update executor (container recreation).

Tests verify:
- Container is recreated on its primary network, then connected to the rest
- A failed network connection is a warning, not a failure
- A failing candidate never stops the rest of the batch
- Start retries right after creation
- Image pulls happen once per repository, failures fail every user of the image
- Dependents wait on the new container
- Replaced images are reclaimed only when enabled
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config.settings import UpdaterConfig
from updates.dependency_analyzer import DependentContainer
from updates.types import DependencyCondition, UpdateCandidate
from updates.update_executor import UpdateExecutor

NEW_IMAGE_ID = "sha256:" + "b" * 64
NEW_DIGEST = "sha256:" + "d" * 64


@pytest.fixture
def cache():
    cache = MagicMock()
    cache.is_latest_image_present = AsyncMock(return_value=False)
    return cache


@pytest.fixture
def cleanup():
    cleanup = MagicMock()
    cleanup.remove_unused_images = AsyncMock(return_value=1)
    return cleanup


@pytest.fixture
def resolver():
    resolver = MagicMock()
    resolver.get_dependents = AsyncMock(return_value=[])
    resolver.stop_dependents = AsyncMock(return_value=[])
    resolver.start_dependents = AsyncMock(return_value=[])
    return resolver


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def runtime(mock_docker_client, make_container_attrs, make_image_attrs):
    """
    Mock client that records created containers and serves them back on inspect.

    runtime.created maps new container ID -> (config, name)
    """
    created = {}

    def create_container_from_config(config, name):
        new_id = f"{name}-new".ljust(64, "0")
        created[new_id] = (config, name)
        return {"Id": new_id, "Warnings": None}

    def inspect_container(container_id):
        config, name = created[container_id]
        return make_container_attrs(container_id=container_id, name=name, image=config["Image"],
                                    image_id=NEW_IMAGE_ID)

    mock_docker_client.api.create_container_from_config.side_effect = create_container_from_config
    mock_docker_client.api.inspect_container.side_effect = inspect_container
    mock_docker_client.api.inspect_image.return_value = make_image_attrs(
        image_id=NEW_IMAGE_ID, repo_digests=[f"nginx@{NEW_DIGEST}"]
    )
    mock_docker_client.created = created
    return mock_docker_client


@pytest.fixture
def make_executor(runtime, cache, notifications, cleanup, resolver, sleep):
    def _make(**updater):
        return UpdateExecutor(
            runtime, cache, notifications, cleanup, UpdaterConfig(**updater),
            image_age=7, resolver=resolver, sleep=sleep,
        )
    return _make


def candidate(container):
    return UpdateCandidate(container=container, reference=container.reference)


@pytest.mark.unit
class TestContainerRecreation:

    @pytest.mark.asyncio
    async def test_recreated_on_primary_network_then_connected(self, make_executor, runtime, make_container,
                                                               recording_sink):
        # Default container id is "c" * 64; a user alias of the same length survives
        container = make_container(networks={
            "b_net": {"Aliases": ["web"], "IPAMConfig": None},
            "a_net": {"Aliases": ["web", "postgres-dev", "c" * 12], "IPAMConfig": {"IPv4Address": "172.20.0.5"}},
        })

        result = await make_executor().execute_updates([candidate(container)])

        assert (result.candidates, result.successful, result.failed) == (1, 1, 0)
        assert result.updated == ["web"]

        runtime.api.stop.assert_called_once_with(container.id, timeout=30)
        runtime.api.remove_container.assert_called_once_with(container.id, v=False, force=True)

        new_id, (config, name) = next(iter(runtime.created.items()))
        assert name == "web"
        assert config["Image"] == "nginx:latest"
        assert config["HostConfig"]["NetworkMode"] == "bridge"
        assert config["NetworkingConfig"] == {"EndpointsConfig": {
            "a_net": {"IPAMConfig": {"IPv4Address": "172.20.0.5"}, "Aliases": ["web", "postgres-dev"]},
        }}

        runtime.api.connect_container_to_network.assert_called_once_with(new_id, "b_net", aliases=["web"])
        runtime.api.start.assert_called_once_with(new_id)

        updated = recording_sink.events("container_updated")
        assert len(updated) == 1
        prev, new, warnings = updated[0]
        assert prev.id == container.id
        assert new.id == new_id
        assert warnings == []

    @pytest.mark.asyncio
    async def test_network_connect_failure_is_warning(self, make_executor, runtime, make_container,
                                                      recording_sink):
        runtime.api.connect_container_to_network.side_effect = Exception("network b_net not found")
        container = make_container(networks={"a_net": {}, "b_net": {}})

        result = await make_executor().execute_updates([candidate(container)])

        assert result.successful == 1
        _, _, warnings = recording_sink.events("container_updated")[0]
        assert len(warnings) == 1
        assert "b_net" in warnings[0]

    @pytest.mark.asyncio
    async def test_host_network_is_not_reconnected(self, make_executor, runtime, make_container):
        container = make_container(network_mode="host", networks={"host": {}, "other": {}})

        await make_executor().execute_updates([candidate(container)])

        runtime.api.connect_container_to_network.assert_not_called()

    @pytest.mark.asyncio
    async def test_stopped_container_is_not_started(self, make_executor, runtime, resolver, make_container):
        container = make_container(status="exited")

        result = await make_executor().execute_updates([candidate(container)])

        assert result.successful == 1
        runtime.api.stop.assert_not_called()
        runtime.api.start.assert_not_called()
        resolver.get_dependents.assert_not_awaited()
        runtime.api.create_container_from_config.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_timeout_label_and_remove_volumes(self, make_executor, runtime, make_container):
        container = make_container(labels={"yacu.stop_timeout": "90"})

        await make_executor(remove_volumes=True).execute_updates([candidate(container)])

        runtime.api.stop.assert_called_once_with(container.id, timeout=90)
        runtime.api.remove_container.assert_called_once_with(container.id, v=True, force=True)

    @pytest.mark.asyncio
    async def test_create_warnings_are_reported(self, make_executor, runtime, make_container, recording_sink):
        def create(config, name):
            runtime.created["w" * 64] = (config, name)
            return {"Id": "w" * 64, "Warnings": ["memory limit ignored"]}

        runtime.api.create_container_from_config.side_effect = create

        await make_executor().execute_updates([candidate(make_container())])

        _, _, warnings = recording_sink.events("container_updated")[0]
        assert warnings == ["memory limit ignored"]


@pytest.mark.unit
class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_stop_failure_does_not_block_next_candidate(self, make_executor, runtime, make_container,
                                                              recording_sink):
        x = make_container(container_id="x" * 64, name="x")
        y = make_container(container_id="y" * 64, name="y")

        def stop(container_id, timeout):
            if container_id == x.id:
                raise Exception("stop timed out")

        runtime.api.stop.side_effect = stop

        result = await make_executor().execute_updates([candidate(x), candidate(y)])

        assert (result.candidates, result.successful, result.failed) == (2, 1, 1)
        assert result.updated == ["y"]
        errors = recording_sink.events("container_error")
        assert len(errors) == 1
        failed, context, error = errors[0]
        assert failed.name == "x"
        assert context == "Unable to stop container"
        assert "stop timed out" in str(error)
        runtime.api.remove_container.assert_called_once_with(y.id, v=False, force=True)

    @pytest.mark.parametrize("method,context", [
        ("remove_container", "Unable to remove container"),
        ("create_container_from_config", "Unable to create container"),
    ])
    @pytest.mark.asyncio
    async def test_failing_steps_report_context(self, make_executor, runtime, make_container, recording_sink,
                                                method, context):
        getattr(runtime.api, method).side_effect = Exception("daemon error")

        result = await make_executor().execute_updates([candidate(make_container())])

        assert result.failed == 1
        assert recording_sink.events("container_error")[0][1] == context
        assert recording_sink.events("container_updated") == []

    @pytest.mark.asyncio
    async def test_dependents_lookup_failure(self, make_executor, runtime, resolver, make_container,
                                             recording_sink):
        resolver.get_dependents.side_effect = Exception("list failed")

        result = await make_executor().execute_updates([candidate(make_container())])

        assert result.failed == 1
        assert recording_sink.events("container_error")[0][1] == "Unable to fetch depending containers"
        runtime.api.stop.assert_not_called()


@pytest.mark.unit
class TestStartRetry:

    @pytest.mark.asyncio
    async def test_start_succeeds_on_third_attempt(self, make_executor, runtime, sleep, make_container):
        runtime.api.start.side_effect = [Exception("not ready"), Exception("not ready"), None]

        result = await make_executor().execute_updates([candidate(make_container())])

        assert result.successful == 1
        assert runtime.api.start.call_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1)

    @pytest.mark.asyncio
    async def test_start_gives_up_after_three_attempts(self, make_executor, runtime, sleep, make_container,
                                                       recording_sink):
        runtime.api.start.side_effect = Exception("port already allocated")

        result = await make_executor().execute_updates([candidate(make_container())])

        assert result.failed == 1
        assert runtime.api.start.call_count == 3
        assert sleep.await_count == 2
        _, context, error = recording_sink.events("container_error")[0]
        assert context == "Unable to start container"
        assert "port already allocated" in str(error)


@pytest.mark.unit
class TestImagePulls:

    @pytest.mark.asyncio
    async def test_shared_image_pulled_once(self, make_executor, runtime, make_container, recording_sink):
        web = make_container(container_id="1" * 64, name="web")
        web2 = make_container(container_id="2" * 64, name="web2")

        result = await make_executor().execute_updates([candidate(web), candidate(web2)])

        assert result.successful == 2
        runtime.images.pull.assert_called_once_with("docker.io/library/nginx", tag="latest", auth_config=None)
        assert len(recording_sink.events("image_updated")) == 1

    @pytest.mark.asyncio
    async def test_image_already_present_skips_pull(self, make_executor, runtime, cache, make_container,
                                                    recording_sink):
        cache.is_latest_image_present.return_value = True

        result = await make_executor().execute_updates([candidate(make_container())])

        assert result.successful == 1
        runtime.images.pull.assert_not_called()
        assert recording_sink.events("image_updated") == []

    @pytest.mark.asyncio
    async def test_pull_failure_fails_every_user(self, make_executor, runtime, make_container, recording_sink):
        web = make_container(container_id="1" * 64, name="web")
        web2 = make_container(container_id="2" * 64, name="web2")
        db = make_container(container_id="3" * 64, name="db", image="postgres:16")

        def pull(repository, tag, auth_config):
            if repository.endswith("nginx"):
                raise Exception("manifest unknown")

        runtime.images.pull.side_effect = pull

        result = await make_executor().execute_updates([candidate(web), candidate(web2), candidate(db)])

        assert (result.successful, result.failed) == (1, 2)
        assert result.updated == ["db"]
        assert len(recording_sink.events("image_error")) == 1
        assert [args[1] for args in recording_sink.events("container_error")] == [
            "Unable to pull image", "Unable to pull image",
        ]
        runtime.api.stop.assert_called_once_with(db.id, timeout=30)

    @pytest.mark.asyncio
    async def test_registry_credentials_used_for_pull(self, runtime, cache, notifications, cleanup, resolver,
                                                      sleep, make_container):
        from config.settings import RegistryEntry

        executor = UpdateExecutor(
            runtime, cache, notifications, cleanup, UpdaterConfig(), image_age=7,
            registries=[RegistryEntry(domain="ghcr.io", username="user", password="token")],
            resolver=resolver, sleep=sleep,
        )
        container = make_container(image="ghcr.io/user/app:v1")

        await executor.execute_updates([candidate(container)])

        runtime.images.pull.assert_called_once_with(
            "ghcr.io/user/app", tag="v1", auth_config={"username": "user", "password": "token"}
        )


@pytest.mark.unit
class TestDependentsAndCleanup:

    @pytest.mark.asyncio
    async def test_dependents_wait_on_new_container(self, make_executor, runtime, resolver, make_container,
                                                    recording_sink):
        dependent = DependentContainer("id-worker", "worker", 30, DependencyCondition.HEALTHY)
        resolver.get_dependents.return_value = [dependent]
        resolver.stop_dependents.return_value = ["failed to stop container worker: gone"]
        resolver.start_dependents.return_value = ["timed out starting container worker"]
        container = make_container(name="api")

        await make_executor().execute_updates([candidate(container)])

        resolver.stop_dependents.assert_awaited_once_with([dependent])
        started_dependents, depends_on = resolver.start_dependents.call_args.args
        assert started_dependents == [dependent]
        assert depends_on.id != container.id
        assert depends_on.id in runtime.created
        _, _, warnings = recording_sink.events("container_updated")[0]
        assert warnings == ["failed to stop container worker: gone", "timed out starting container worker"]

    @pytest.mark.asyncio
    async def test_replaced_images_removed_when_enabled(self, make_executor, cleanup, make_container):
        web = make_container(container_id="1" * 64, name="web")
        web2 = make_container(container_id="2" * 64, name="web2")

        result = await make_executor(remove_images=True).execute_updates([candidate(web), candidate(web2)])

        assert result.images_removed == 1
        images = cleanup.remove_unused_images.call_args.args[0]
        assert len(images) == 1
        assert [image.id for image in images] == [web.image.id]

    @pytest.mark.asyncio
    async def test_images_kept_by_default(self, make_executor, cleanup, make_container):
        await make_executor().execute_updates([candidate(make_container())])

        cleanup.remove_unused_images.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_to_remove_when_all_failed(self, make_executor, runtime, cleanup, make_container):
        runtime.api.stop.side_effect = Exception("stop failed")

        result = await make_executor(remove_images=True).execute_updates([candidate(make_container())])

        assert result.failed == 1
        cleanup.remove_unused_images.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_executor, runtime):
        result = await make_executor().execute_updates([])

        assert result.candidates == 0
        runtime.images.pull.assert_not_called()
