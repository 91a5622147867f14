import os
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

class Config:
    # Wallet Connection Configuration
    @property
    def NWC_CONNECTION_STRING(self) -> Optional[str]:
        return os.getenv('NWC_CONNECTION_STRING') or None

    @property
    def NWC_CONNECTION_STORE_PATH(self) -> str:
        return os.path.expanduser(os.getenv('NWC_CONNECTION_STORE_PATH', '~/.nwc/connection.json'))

    # Bridge Configuration
    @property
    def NWC_BRIDGE_URL(self) -> Optional[str]:
        return os.getenv('NWC_BRIDGE_URL') or None

    @property
    def NWC_BRIDGE_API_KEY(self) -> Optional[str]:
        return os.getenv('NWC_BRIDGE_API_KEY') or None

    # Timeout Configuration
    @property
    def NWC_REQUEST_TIMEOUT_SECONDS(self) -> float:
        return float(os.getenv('NWC_REQUEST_TIMEOUT_SECONDS', 30))

    @property
    def NWC_BRIDGE_TIMEOUT_SECONDS(self) -> float:
        return float(os.getenv('NWC_BRIDGE_TIMEOUT_SECONDS', 15))

    @property
    def NWC_RELAY_CONNECT_TIMEOUT_SECONDS(self) -> float:
        return float(os.getenv('NWC_RELAY_CONNECT_TIMEOUT_SECONDS', 10))

    # Routing and Capability Configuration
    @property
    def NWC_TRANSPORT_HINT_TTL_SECONDS(self) -> int:
        return int(os.getenv('NWC_TRANSPORT_HINT_TTL_SECONDS', 300))  # 5 minutes

    @property
    def NWC_CAPABILITY_TTL_SECONDS(self) -> int:
        return int(os.getenv('NWC_CAPABILITY_TTL_SECONDS', 3600))  # 1 hour

    @property
    def NWC_STRICT_CAPABILITIES(self) -> bool:
        return os.getenv('NWC_STRICT_CAPABILITIES', 'false').lower() == 'true'

    @property
    def NWC_VERIFY_SIGNATURES(self) -> bool:
        return os.getenv('NWC_VERIFY_SIGNATURES', 'true').lower() == 'true'

    # Redis Configuration
    @property
    def REDIS_URL(self) -> Optional[str]:
        return os.getenv('REDIS_URL') or None

    # Application Configuration
    @property
    def APP_ENV(self) -> str:
        return os.getenv('APP_ENV', 'development')

    # Logging Configuration
    @property
    def LOG_LEVEL(self) -> str:
        return os.getenv('LOG_LEVEL', 'INFO')

    @property
    def LOG_FORMAT(self) -> str:
        return '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @property
    def LOG_DIR(self) -> str:
        return os.getenv('LOG_DIR', 'logs')

    @property
    def LOG_TO_FILE(self) -> bool:
        return os.getenv('LOG_TO_FILE', 'false').lower() == 'true'

    SECRET_SETTINGS = ('NWC_CONNECTION_STRING', 'NWC_BRIDGE_API_KEY')

    def validate(self) -> bool:
        from nostr_clients.connection_uri import parse

        timeouts = [
            'NWC_REQUEST_TIMEOUT_SECONDS',
            'NWC_BRIDGE_TIMEOUT_SECONDS',
            'NWC_RELAY_CONNECT_TIMEOUT_SECONDS',
        ]

        for var in timeouts:
            if getattr(self, var) <= 0:
                raise ValueError(f"{var} must be positive")

        if self.NWC_CAPABILITY_TTL_SECONDS < 0 or self.NWC_TRANSPORT_HINT_TTL_SECONDS < 0:
            raise ValueError("TTL settings must not be negative")

        if self.NWC_CONNECTION_STRING:
            parse(self.NWC_CONNECTION_STRING)

        return True

    def get_bridge_params(self) -> dict:
        return {
            'bridge_url': self.NWC_BRIDGE_URL,
            'api_key': self.NWC_BRIDGE_API_KEY,
            'timeout_seconds': self.NWC_BRIDGE_TIMEOUT_SECONDS,
        }

    def to_dict(self) -> dict:
        values = {
            attr: getattr(self, attr)
            for attr in dir(self)
            if attr.isupper() and attr != 'SECRET_SETTINGS' and not callable(getattr(self, attr))
        }
        for attr in self.SECRET_SETTINGS:
            if values.get(attr):
                values[attr] = '***'
        return values

    def __str__(self) -> str:
        return (f"Config(NWC_BRIDGE_URL={self.NWC_BRIDGE_URL}, "
                f"NWC_REQUEST_TIMEOUT_SECONDS={self.NWC_REQUEST_TIMEOUT_SECONDS}, "
                f"REDIS_URL={self.REDIS_URL})")

class DevelopmentConfig(Config):
    LOG_LEVEL = 'DEBUG'

class ProductionConfig(Config):
    LOG_LEVEL = 'INFO'

class TestingConfig(Config):
    LOG_LEVEL = 'DEBUG'
    REDIS_URL = None
    NWC_REQUEST_TIMEOUT_SECONDS = 5.0

config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
