"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


def _detect_device() -> str:
    try:
        import torch
        return "cuda" if torch.cuda.is_available() else "cpu"
    except ImportError:
        return "cpu"


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./data/cropadvisor.db"
    DATA_DIR: str = "./data"
    UPLOAD_DIR: str = "./data/uploads"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    INFERENCE_BACKEND: Literal["gemini", "local"] = "gemini"
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    LOCAL_MODEL: str = "google/gemma-3-4b-it"
    DEVICE: str = _detect_device()
    INFERENCE_TIMEOUT_S: float = 60.0
    MOCK_MODELS: bool = False

    PAYMENT_MODE: Literal["onchain", "gasless"] = "onchain"
    LEDGER_RPC_URL: str = "http://127.0.0.1:8545"
    CONTRACT_ADDRESS: str = "0x" + "0" * 40
    TX_GAS_LIMIT: int = 300_000
    TX_RECEIPT_TIMEOUT_S: float = 120.0

    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    model_config = {"env_prefix": "CROPADVISOR_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
