"""Engine configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = "OnvifCam"
    debug: bool = False

    # Credentials used for discovered devices that have none of their own
    default_username: str = "admin"
    default_password: str = ""

    # Request dispatch
    request_timeout: float = 5.0
    long_request_timeout: float = 15.0
    request_attempts: int = 3
    retry_delay: float = 2.0

    # Authentication
    nonce_lifetime: float = 300.0  # seconds before a client nonce is regenerated
    wss_nonce_length: int = 22
    http_cnonce_length: int = 4
    wss_digest_algorithm: str = "sha1"  # sha1 or sha256

    # Discovery
    discovery_timeout: float = 5.0
    multicast_group: str = "239.255.255.250"
    multicast_port: int = 3702
    probe_send_attempts: int = 3
    # Comma-separated IPs probed directly in addition to multicast
    static_ip_list: str = ""
    synthesize_unreachable: bool = False
    rediscovery_base_delay: float = 20.0
    rediscovery_max_delay: float = 300.0
    rediscovery_probe_timeout: float = 5.0

    # Event subscriptions
    subscribe_duration: int = 600  # seconds requested per subscription
    renew_jitter_min: int = 45
    renew_jitter_max: int = 60
    renew_floor: float = 10.0
    prefer_pull_point: bool = False
    # Vendor scope names whose devices must be resubscribed instead of renewed
    resubscribe_vendors: str = "IPC-BO"
    event_listen_host: Optional[str] = None
    event_min_interval: float = 5.0

    # PullPoint polling
    pull_interval: float = 10.0
    pull_timeout: int = 10  # seconds the device may hold a PullMessages call
    pull_message_limit: int = 10
    pull_failure_threshold: int = 5

    # Admission control
    device_create_permits: int = 1
    event_permits: int = 5

    # Persisted device state (disabled when unset)
    state_directory: Optional[Path] = None
    # Fernet key for stored device passwords; plaintext when unset
    encryption_key: Optional[str] = None

    @property
    def static_ips(self) -> list[str]:
        return [ip.strip() for ip in self.static_ip_list.split(",") if ip.strip()]

    @property
    def resubscribe_vendor_ids(self) -> set[str]:
        return {
            v.strip().lower() for v in self.resubscribe_vendors.split(",") if v.strip()
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
