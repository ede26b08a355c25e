from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'agritrace.db'}"
    DATABASE_ECHO: bool = False

    # Blockchain Configuration
    LEDGER_ENABLED: bool = True
    RPC_URL: str = "https://api.avax-test.network/ext/bc/C/rpc"
    NETWORK_NAME: str = "Avalanche Fuji Testnet"
    CHAIN_ID: int = 43113
    LEDGER_POA_CHAIN: bool = False  # inject the extraData middleware (Shardeum, BSC, ...)
    LEDGER_TIMEOUT_SECONDS: float = 120.0

    # Master wallet: pays gas for funding user wallets and signs admin verification
    MASTER_PRIVATE_KEY: str = ""

    # Smart Contract
    CONTRACT_ADDRESS: str = ""
    CONTRACT_ABI_PATH: str = str(BASE_DIR / "contracts" / "AgriTrace.json")

    # Gas Configuration
    GAS_LIMIT: int = 500000
    GAS_ESTIMATION_BUFFER: float = 1.2
    FUND_AMOUNT_ETHER: str = "0.1"

    # Blockchain Explorer Configuration
    EXPLORER_BASE_URL: str = "https://testnet.snowtrace.io"
    EXPLORER_TX_URL: str = "https://testnet.snowtrace.io/tx"

    # Onboarding
    AUTO_VERIFY_USERS: bool = False

    # API Configuration
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 3002
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Security
    JWT_SECRET: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_HOURS: int = 24
    ADMIN_API_KEY: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True

# Global settings instance
settings = Settings()
