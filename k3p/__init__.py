ROOT_LOGGER_NAME = "k3p"

# package archive layout
META_VERSION = "v1"
MANIFEST_META_FILE = "manifest.json"
MANIFEST_EULA_FILE = "EULA.txt"
INSTALL_SCRIPT = "install.sh"

# well-known paths on a k3s node
K3S_ROOT_DIR = "/var/lib/rancher/k3s"
K3S_BIN_DIR = "/usr/local/bin"
K3S_SCRIPTS_DIR = "/usr/local/bin/k3p-scripts"
K3S_IMAGES_DIR = f"{K3S_ROOT_DIR}/agent/images"
K3S_MANIFESTS_DIR = f"{K3S_ROOT_DIR}/server/manifests"
K3S_STATIC_DIR = f"{K3S_ROOT_DIR}/server/static"

AGENT_TOKEN_FILE = f"{K3S_ROOT_DIR}/server/node-token"
SERVER_TOKEN_FILE = f"{K3S_ROOT_DIR}/server/server-token"

INSTALLED_PACKAGE_DIR = f"{K3S_ROOT_DIR}/data/k3p"
INSTALLED_PACKAGE_FILE = f"{INSTALLED_PACKAGE_DIR}/package.tar"
INSTALLED_CONFIG_FILE = f"{INSTALLED_PACKAGE_DIR}/config.json"

# control plane
K3S_SERVER_PROCESS = "k3s-server"
K3S_API_PORT = 6443

DEFAULT_SSH_PORT = 22
DEFAULT_TOKEN_LENGTH = 128
