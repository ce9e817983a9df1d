"""Centralized constants for the OpenWrt Tailscale installer."""

# Release artifacts
ASSET_PRODUCT = "tailscale"
ASSET_SUFFIX = ".tar.gz"
DEFAULT_RELEASE_API_URL = (
    "https://api.github.com/repos/snarknn/openwrt-smaller-tailscale/releases/latest"
)
GITHUB_ACCEPT_HEADER = "application/vnd.github.v3+json"

# Installed files, relative to the filesystem root
AGENT_BINARY = "usr/bin/tailscale"
DAEMON_BINARY = "usr/bin/tailscaled"
INIT_SCRIPT = "etc/init.d/tailscale"
RC_DIR = "etc/rc.d"
AUTOSTART_GLOB = "S*tailscale*"
OPENWRT_RELEASE_FILE = "etc/openwrt_version"

# Logical snapshot name -> installed path
SNAPSHOT_FILES: dict[str, str] = {
    "tailscale": AGENT_BINARY,
    "tailscaled": DAEMON_BINARY,
    "tailscale.init": INIT_SCRIPT,
}

# Services
SERVICE_NAME = "tailscale"
NETWORK_SERVICE = "network"
FIREWALL_SERVICE = "firewall"

# Persisted configuration
INTERFACE_NAME = "tailscale"
INTERFACE_PROTO = "unmanaged"
INTERFACE_DEVICE = "tailscale0"
ZONE_NAME = "tailscale"
LAN_ZONE = "lan"

# OS packages the agent needs at runtime
DEPENDENCY_PACKAGES = ("kmod-tun", "iptables-nft", "ca-bundle", "ca-certificates")

# Timeouts (seconds)
HTTP_TIMEOUT = 30
DOWNLOAD_TIMEOUT = 300
COMMAND_TIMEOUT = 120
PACKAGE_TIMEOUT = 600
AUTH_TIMEOUT = 600

# Streaming download chunk size
DOWNLOAD_CHUNK_SIZE = 65536

# Accepted values for LOG_LEVEL
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
