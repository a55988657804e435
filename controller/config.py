import os

# ---------------------------------------------------------------------------
# Configuration from environment
# ---------------------------------------------------------------------------
CRD_GROUP = "tenancy.opsmode.io"
CRD_VERSION = "v1alpha1"

WORKERS = int(os.environ.get("WORKERS", "2"))
MAX_RETRIES = int(os.environ.get("MAX_RETRIES", "15"))
APPROVAL_TTL_HOURS = int(os.environ.get("APPROVAL_TTL_HOURS", "72"))
NOTIFIER_WORKERS = int(os.environ.get("NOTIFIER_WORKERS", "4"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
SMTP_FROM = os.environ.get("SMTP_FROM", "no-reply@tenancy.opsmode.io")
SMTP_TLS = os.environ.get("SMTP_TLS", "true").lower() not in ("false", "0", "no")
CONSOLE_URL = os.environ.get("CONSOLE_URL", "")

# Kubeconfigs handed to users point here; empty means "derive from the in-cluster env"
CLUSTER_SERVER = os.environ.get("CLUSTER_SERVER", "")
CSR_SIGNER = os.environ.get("CSR_SIGNER", "kubernetes.io/kube-apiserver-client")
CERT_EXPIRATION_SECONDS = int(os.environ.get("CERT_EXPIRATION_SECONDS", str(365 * 24 * 3600)))

# Labels
LABEL_GENERATED = f"{CRD_GROUP}/generated"
LABEL_AUP = f"{CRD_GROUP}/acceptable-use-policy"
LABEL_CLUSTER_UID = f"{CRD_GROUP}/cluster-uid"
LABEL_TENANT = f"{CRD_GROUP}/tenant"
LABEL_TENANT_UID = f"{CRD_GROUP}/tenant-uid"
GENERATED_SELECTOR = f"{LABEL_GENERATED}=true"

SYSTEM_NAMESPACE = "kube-system"
