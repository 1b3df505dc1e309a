"""
Centralized path configuration for YACU
"""

import os

# Config file path, overridable with --config
DEFAULT_CONFIG_PATH = os.getenv('YACU_CONFIG', 'yacu.yaml')
