"""Constants used across the operator."""

# Custom resources watched by the operator
API_GROUP = "shipwright.io"
API_VERSION = "v1beta1"
IMAGE_PLURAL = "images"
IMAGE_IMPORT_PLURAL = "imageimports"
IMAGE_KIND = "Image"
IMAGE_IMPORT_KIND = "ImageImport"

# Secret holding the backend (mirror) registry configuration
MIRROR_CONFIG_SECRET = "mirror-registry-config"

# Docker config secrets usable as registry credentials
DOCKER_CONFIG_SECRET_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_KEY = ".dockerconfigjson"

DEFAULT_UNQUALIFIED_REGISTRIES = ["docker.io"]

# Reconciliation defaults
DEFAULT_MAX_CONCURRENT_SYNCS = 10
DEFAULT_SYNC_TIMEOUT_SECONDS = 60.0
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 60.0

# Import bookkeeping
MAX_IMPORT_ATTEMPTS = 10
MAX_HASH_REFERENCES = 10
