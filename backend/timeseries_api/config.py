"""Service Configuration: environment-driven settings and the frozen HTTP config.

Invariants:
    - get_settings() is cached (lru_cache), single instance per process
    - HttpConfig is frozen: the server never mutates its config after construction
    - Every prefixed route lives under {path}/{version}/

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - DB_PATH keeps its historical unprefixed name; every other variable uses TS_API_
    - CORS and TLS are nested models so a policy can be passed around as one value
"""

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = "postgresql://localhost:5432/postgres"


class HttpCorsConfig(BaseModel):
    """CORS policy installed as a response layer when enabled."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    allow_origins: tuple[str, ...] = ("*",)
    allow_methods: tuple[str, ...] = ("GET", "OPTIONS")
    allow_headers: tuple[str, ...] = ("*",)
    allow_credentials: bool = False
    max_age: int = 600


class HttpTlsConfig(BaseModel):
    """TLS material. Carried for deployment tooling; termination happens upstream."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    cert_path: str | None = None
    key_path: str | None = None


class HttpConfig(BaseModel):
    """Listen address, route prefix and layer policies for one ApiServer."""

    model_config = ConfigDict(frozen=True)

    address: str = "localhost:8082"
    path: str = "/api"
    version: str = "1.0"
    cors: HttpCorsConfig = HttpCorsConfig()
    tls: HttpTlsConfig = HttpTlsConfig()

    @field_validator("address")
    @classmethod
    def check_address(cls, v: str) -> str:
        _split_address(v)
        return v

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        """'api/' and '/api' both mean '/api'; the root prefix is ''."""
        v = v.strip().strip("/")
        return f"/{v}" if v else ""

    @field_validator("version")
    @classmethod
    def normalize_version(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v:
            raise ValueError("version must not be empty")
        return v

    @property
    def host(self) -> str:
        return _split_address(self.address)[0]

    @property
    def port(self) -> int:
        return _split_address(self.address)[1]

    @property
    def prefix(self) -> str:
        return f"{self.path}/{self.version}"

    def route_path(self, suffix: str) -> str:
        """Full path for a registered suffix: {path}/{version}/{suffix}."""
        return f"{self.prefix}/{suffix.strip().strip('/')}"


def _split_address(address: str) -> tuple[str, int]:
    """Split 'host:port' (or '[v6]:port') into its parts."""
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"address must be host:port, got {address!r}")
    port_number = int(port)
    if port_number > 65535:
        raise ValueError(f"port out of range in {address!r}")
    return host.strip("[]"), port_number


class Settings(BaseSettings):
    """Process settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TS_API_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    db_path: str = Field(default=DEFAULT_DB_PATH, validation_alias="DB_PATH")
    db_max_connections: int = Field(default=20, ge=1)
    db_acquire_timeout_seconds: float = Field(default=30.0, gt=0)

    # HTTP
    address: str = "localhost:8082"
    path: str = "/api"
    version: str = "1.0"
    request_timeout_seconds: float = Field(default=30.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    max_concurrent_requests: int = Field(default=0, ge=0)

    # CORS
    cors_enabled: bool = False
    cors_origins: list[str] = ["*"]

    # TLS
    tls_enabled: bool = False
    tls_cert_path: str | None = None
    tls_key_path: str | None = None

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    def http_config(self) -> HttpConfig:
        return HttpConfig(
            address=self.address,
            path=self.path,
            version=self.version,
            cors=HttpCorsConfig(
                enabled=self.cors_enabled,
                allow_origins=tuple(self.cors_origins),
            ),
            tls=HttpTlsConfig(
                enabled=self.tls_enabled,
                cert_path=self.tls_cert_path,
                key_path=self.tls_key_path,
            ),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
