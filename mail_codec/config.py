# mail_codec/config.py
from __future__ import annotations
from dataclasses import dataclass
import os
from dotenv import load_dotenv

load_dotenv()

@dataclass(frozen=True)
class Settings:
    # Gmail OAuth
    GMAIL_TOKEN_PATH: str = os.getenv("GMAIL_TOKEN_PATH", "token.json")
    GMAIL_CLIENT_SECRET_PATH: str = os.getenv("GMAIL_CLIENT_SECRET_PATH", "client_secret.json")
    GMAIL_USER_ID: str = os.getenv("GMAIL_USER_ID", "me")

    # Inline images
    INLINE_IMAGE_BATCH_SIZE: int = int(os.getenv("INLINE_IMAGE_BATCH_SIZE", 3))
    CONTENT_ID_DOMAIN: str = os.getenv("CONTENT_ID_DOMAIN", "gmail.com")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

settings = Settings()
