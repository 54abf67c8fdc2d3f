"""
Pydantic models for broker configuration.

Mirrors the defaults dict in loader.py, providing typed access
to all broker.yml settings via BrokerConfig.settings().
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class DevicesConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    directory: str = "/dev/input"
    group: str = "input"


class AccountsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    managed_group: str = "couchplay"
    input_group: str = "input"
    shell: str = "/bin/bash"
    linger_dir: str = "/var/lib/systemd/linger"
    termination_grace: float = 2.0
    temp_dirs: list[str] = ["/tmp", "/var/tmp", "/dev/shm"]
    sysvipc_dir: str = "/proc/sysvipc"


class RuntimeAccessConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    runtime_root: str = "/run/user"
    group: str = "couchplay"
    display_socket: str = "wayland-0"
    audio_dir: str = "pulse"
    audio_sockets: list[str] = ["pipewire-0", "pulse/native"]
    xauth_patterns: list[str] = ["xauth_*", ".mutter-Xwaylandauth.*"]


class MountsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    app_name: str = "couchplay"


class InstancesConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    compositor_binary: str = "gamescope"
    session_shell: str = "/bin/bash"
    stop_grace: float = 5.0
    monitor_interval: int = 5


class TimeoutsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    quick: float = 5.0
    account: float = 30.0
    recursive: float = 120.0
    authorization: float = 60.0


class RateLimitingConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    default_limit: str = "600/minute"
    admin_limit: str = "10/minute"


class SecurityConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    allow_user_interaction: bool = True
    rate_limiting: RateLimitingConfig = RateLimitingConfig()


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    socket_path: str = "/run/couchplay-broker.sock"
    socket_mode: int = 0o666


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str = "INFO"


class BrokerSettings(BaseModel):
    """Root settings model mirroring broker.yml structure."""

    model_config = ConfigDict(extra="ignore")

    devices: DevicesConfig = DevicesConfig()
    accounts: AccountsConfig = AccountsConfig()
    runtime_access: RuntimeAccessConfig = RuntimeAccessConfig()
    mounts: MountsConfig = MountsConfig()
    instances: InstancesConfig = InstancesConfig()
    timeouts: TimeoutsConfig = TimeoutsConfig()
    security: SecurityConfig = SecurityConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()
