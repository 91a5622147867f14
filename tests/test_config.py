"""
Test configuration for wallet connect client tests
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Test configuration
TEST_CONFIG = {
    # Test settings
    'APP_ENV': 'testing',
    'LOG_LEVEL': 'DEBUG',
    'LOG_TO_FILE': 'false',

    # Timeouts kept short for tests
    'NWC_REQUEST_TIMEOUT_SECONDS': 5,
    'NWC_BRIDGE_TIMEOUT_SECONDS': 2,
    'NWC_RELAY_CONNECT_TIMEOUT_SECONDS': 2,
    'NWC_TRANSPORT_HINT_TTL_SECONDS': 300,
    'NWC_CAPABILITY_TTL_SECONDS': 3600,
    'NWC_STRICT_CAPABILITIES': 'false',
    'NWC_VERIFY_SIGNATURES': 'true',
}

# Never picked up from a developer's .env during tests
UNSET_VARS = [
    'NWC_CONNECTION_STRING',
    'NWC_BRIDGE_URL',
    'NWC_BRIDGE_API_KEY',
    'NWC_CONNECTION_STORE_PATH',
    'REDIS_URL',
]

def configure_test_environment():
    """Configure environment for testing"""
    for key, value in TEST_CONFIG.items():
        os.environ[key] = str(value)
    for key in UNSET_VARS:
        os.environ.pop(key, None)
