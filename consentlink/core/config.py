from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    APP_NAME: str = "ConsentLink Medical Records"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Local, non-authoritative store (audit rows, advisory permission cache)
    DATABASE_URL: str = "sqlite:///./consentlink.db"

    # Ledger
    LEDGER_GATEWAY_URL: Optional[str] = None
    LEDGER_TIMEOUT: int = 15
    LEDGER_MOCK_MODE: bool = True  # In-memory ledger when the gateway is unavailable
    REQUIRED_NETWORK_ID: int = 1337
    REQUIRED_NETWORK_NAME: str = "Ganache"
    REQUIRED_RPC_URL: str = "http://127.0.0.1:7545"

    # Content-addressed storage
    PINATA_JWT: Optional[str] = None
    PINATA_API_URL: str = "https://api.pinata.cloud"
    PINATA_TIMEOUT: int = 60
    IPFS_GATEWAY_URL: str = "https://gateway.pinata.cloud"
    LOCAL_STORAGE_DIR: Optional[str] = None
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    ALLOWED_UPLOAD_TYPES: List[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/jpg",
    ]

    # Media sessions
    STREAM_API_BASE_URL: Optional[str] = None
    STREAM_API_KEY: Optional[str] = None
    MEDIA_TIMEOUT: int = 10
    MEDIA_MOCK_MODE: bool = True

    # Call signaling
    CALL_REQUEST_TIMEOUT_SECONDS: float = 30.0

    class Config:
        env_file = ".env"


settings = Settings()
