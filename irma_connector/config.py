"""
config.py - Cấu hình tập trung cho IRMA Connector
"""
from pydantic_settings import BaseSettings

from .session import SessionPolicy


class ConnectorSettings(BaseSettings):
    # IRMA server (verification authority)
    SERVER_URL: str = "http://localhost:8088"
    AUTH_METHOD: str = "none"  # none, token, hmac, publickey
    KEY: str = ""
    REQUESTOR_NAME: str = ""
    LANGUAGE: str = "en"

    # Claim store
    STORE_ENDPOINT: str = "memory://"
    CACHING: bool = False

    # Session polling
    POLL_INTERVAL: float = 1.0
    PENDING_TIMEOUT: float = 300.0
    CONNECTED_TIMEOUT: float = 300.0
    SESSION_RETENTION: float = 60.0  # seconds a finished session stays readable

    LOG_LEVEL: str = "WARNING"

    class Config:
        env_prefix = "IRMA_"
        env_file = ".env"

    def session_policy(self) -> SessionPolicy:
        return SessionPolicy(
            poll_interval=self.POLL_INTERVAL,
            pending_timeout=self.PENDING_TIMEOUT,
            connected_timeout=self.CONNECTED_TIMEOUT
        )
