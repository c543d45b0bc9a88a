"""Settings and configuration."""
import os
from typing import Optional
from pydantic_settings import BaseSettings

# Load .env file if it exists
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

class Settings(BaseSettings):
    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./grantkeeper.db")
    run_migrations: bool = False
    dev_mode: bool = False

    # Account lifecycle
    default_validity_days: int = 30
    admin_validity_days: int = 365
    max_connections_per_account: int = 3

    # Secret policy
    min_secret_length: int = 8
    max_secret_length: int = 128
    bcrypt_rounds: int = 12

    # Conversation sessions
    session_idle_timeout_seconds: int = 300  # 5 Minutes

    # Background jobs
    reconcile_interval_seconds: int = 21600  # 6 Hours
    telemetry_interval_seconds: int = 300
    status_log_path: Optional[str] = None

    # Audit
    audit_backend: str = "sql"  # sql, stdout

    # Admin
    admin_requester_id: Optional[int] = None
    admin_api_token: str = os.getenv("ADMIN_API_TOKEN", "dev-admin-token-change-in-prod")

    # Provisioning
    provisioner_backend: str = "host"  # host, memory
    profile_dir: str = "./configs"
    server_host: str = "127.0.0.1"
    server_port: int = 1194
    vpn_protocol: str = "udp"
    ca_cert_path: str = "./certs/ca.crt"
    tls_auth_path: str = "./certs/ta.key"
    vpn_user_group: str = "vpnusers"
    command_timeout_seconds: int = 30
    host_allow_bad_names: bool = True

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }

settings = Settings()
