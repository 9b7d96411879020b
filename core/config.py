"""
Application Configuration
Add constants, secrets, env variables here
"""

from functools import lru_cache
import os
import json
from pathlib import Path
from pydantic import computed_field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict
import boto3
from botocore.exceptions import ClientError
from dotenv import load_dotenv

# Load .env file into os.environ so os.getenv() works correctly
# This must happen before Settings class is instantiated
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


# Allowed upload types, grouped by category
DEFAULT_ALLOWED_MIME_TYPES: dict[str, tuple[str, ...]] = {
    "image": (
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ),
    "document": (
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ),
    "text": (
        "text/plain",
        "text/csv",
        "text/markdown",
        "application/json",
    ),
    "archive": (
        "application/zip",
        "application/x-7z-compressed",
        "application/x-rar-compressed",
        "application/gzip",
        "application/x-tar",
    ),
    "media": (
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
        "video/mp4",
        "video/webm",
        "video/quicktime",
    ),
}


def get_secret(secret_name: str, region_name: str) -> dict:
    """
    Fetch and parse a JSON secret from AWS Secrets Manager.
    Raises botocore ClientError when the secret cannot be read.
    """
    client = boto3.session.Session().client(
        service_name='secretsmanager',
        region_name=region_name
    )
    response = client.get_secret_value(SecretId=secret_name)
    return json.loads(response['SecretString'].replace('\n', ''))


# Settings shared by the API, the scripts and the tests
class Settings(BaseSettings):
    # Deployment
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CLIENT_ORIGIN: str | None = os.getenv("CLIENT_ORIGIN")

    # Payload of the ENV_SECRETS secret, fetched on first use
    _secret_cache: dict | None = PrivateAttr(default=None)

    def _get_config_value(
        self,
        env_var_name: str,
        secret_key_name: str | None = None,
        default: str | None = None
    ) -> str | None:
        """
        Resolve a value from the environment, then from the ENV_SECRETS
        secret (under ``secret_key_name``, defaulting to the variable name),
        then ``default``.
        """
        value = os.getenv(env_var_name)
        if value:
            return value

        secret_name = os.getenv('ENV_SECRETS')
        if not secret_name:
            return default
        if self._secret_cache is None:
            try:
                self._secret_cache = get_secret(
                    secret_name, os.getenv("AWS_REGION", 'us-east-1')
                )
            except ClientError:
                # Unreadable secret: treat every key as absent
                return default
        value = self._secret_cache.get(secret_key_name or env_var_name)
        return default if value is None else value

    # SQLAlchemy - Create db connection string
    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        """Build database URI from env or secrets, defaults to sqlite://"""
        return self._get_config_value("SQLALCHEMY_DATABASE_URI", default="sqlite://")

    # Which Metadata Store implementation to build ("sql" or "opensearch")
    METADATA_BACKEND: str = os.getenv("METADATA_BACKEND", "sql")

    # OpenSearch Configuration
    @computed_field
    @property
    def OPENSEARCH_HOST(self) -> str | None:
        """Get OpenSearch host from env or secrets"""
        return self._get_config_value("OPENSEARCH_HOST")

    @computed_field
    @property
    def OPENSEARCH_PORT(self) -> str | None:
        """Get OpenSearch port from env or secrets"""
        return self._get_config_value("OPENSEARCH_PORT", default="9200")

    @computed_field
    @property
    def OPENSEARCH_USER(self) -> str | None:
        """Get OpenSearch user from env or secrets"""
        return self._get_config_value("OPENSEARCH_USER")

    @computed_field
    @property
    def OPENSEARCH_PASSWORD(self) -> str | None:
        """Get OpenSearch password from env or secrets"""
        return self._get_config_value("OPENSEARCH_PASSWORD")

    OPENSEARCH_INDEX: str = os.getenv("OPENSEARCH_INDEX", "files")
    OPENSEARCH_USE_SSL: bool = os.getenv("OPENSEARCH_USE_SSL", "true").lower() == "true"

    # AWS Credentials
    AWS_ACCESS_KEY_ID: str | None = os.getenv("AWS_ACCESS_KEY_ID")
    AWS_SECRET_ACCESS_KEY: str | None = os.getenv("AWS_SECRET_ACCESS_KEY")
    AWS_REGION: str | None = os.getenv("AWS_REGION")

    # Object storage
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "filevault-uploads")
    STORAGE_PREFIX: str = os.getenv("STORAGE_PREFIX", "uploads")
    STORAGE_ENDPOINT_URL: str | None = os.getenv("STORAGE_ENDPOINT_URL")
    CDN_BASE_URL: str | None = os.getenv("CDN_BASE_URL")
    SIGNED_URL_TTL: int = int(os.getenv("SIGNED_URL_TTL", "3600"))

    # Upload policy
    MAX_FILE_SIZE: int = int(os.getenv("MAX_FILE_SIZE", str(50 * 1024 * 1024)))
    ALLOWED_MIME_TYPES: str | None = os.getenv("ALLOWED_MIME_TYPES")
    MAX_BATCH_FILES: int = int(os.getenv("MAX_BATCH_FILES", "10"))
    BATCH_CONCURRENCY: int = int(os.getenv("BATCH_CONCURRENCY", "4"))

    # Pagination
    DEFAULT_PAGE_LIMIT: int = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))
    MAX_PAGE_LIMIT: int = int(os.getenv("MAX_PAGE_LIMIT", "100"))

    # Bounds on calls to the external services (seconds)
    STORAGE_TIMEOUT: float = float(os.getenv("STORAGE_TIMEOUT", "30"))
    METADATA_TIMEOUT: float = float(os.getenv("METADATA_TIMEOUT", "10"))
    WORKER_POOL_SIZE: int = int(os.getenv("WORKER_POOL_SIZE", "16"))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def allowed_mime_types(self) -> dict[str, tuple[str, ...]]:
        """
        Allow-list grouped by category.
        ALLOWED_MIME_TYPES (comma-separated) replaces the defaults; types
        listed there keep their default category, unknown ones go to "other".
        """
        if not self.ALLOWED_MIME_TYPES:
            return DEFAULT_ALLOWED_MIME_TYPES

        known = {
            mime: category
            for category, mimes in DEFAULT_ALLOWED_MIME_TYPES.items()
            for mime in mimes
        }
        grouped: dict[str, list[str]] = {}
        for mime in self.ALLOWED_MIME_TYPES.split(","):
            mime = mime.strip().lower()
            if mime:
                grouped.setdefault(known.get(mime, "other"), []).append(mime)
        return {category: tuple(mimes) for category, mimes in grouped.items()}

    # Read environment variables from .env file, if it exists
    # extra='ignore' prevents validation errors from extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class InMemoryDbSettings(Settings):
    """Settings used by the test suite"""

    TESTING: bool = True
    ENVIRONMENT: str = "test"

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        return "sqlite:///:memory:"


# Export settings
@lru_cache
def get_settings() -> Settings:
    """
    Get settings instance, cached for performance
    """
    if os.getenv("SETTINGS_MODE") == "test":
        return InMemoryDbSettings()
    return Settings()
