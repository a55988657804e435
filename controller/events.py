"""
Kubernetes Event recording plus the structured audit log line.
"""

import json
import logging
from datetime import datetime, timezone

from kubernetes import client

from controller.config import CRD_GROUP, CRD_VERSION
from controller.models import RoleRequest

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("k8s-tenancy-audit")

COMPONENT = "rolerequest-controller"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Event reasons
REASON_SYNCED = "Synced"
REASON_FOUND = "Found"
REASON_NOT_FOUND = "NotFound"
REASON_UPDATED = "Updated"
REASON_NOT_AGREED = "NotAgreed"
REASON_POLICY_FAILED = "CreationFailed"
REASON_NOT_APPROVED = "NotApproved"
REASON_APPROVED = "Approved"
REASON_BINDING_FAILED = "BindingFailed"
REASON_CERT_FAILED = "CertificateFailed"
REASON_CONFIG_FAILED = "KubeconfigFailed"
REASON_EXPIRED = "Expired"
REASON_DELETED = "Deleted"


def audit(event: str, name: str, **kwargs):
    """Emit a structured audit log line."""
    audit_logger.info(json.dumps({
        "audit": True,
        "event": event,
        "request": name,
        "ts": datetime.now(timezone.utc).isoformat(),
        **kwargs,
    }))


class EventRecorder:
    """Posts core/v1 Events about RoleRequests. Never raises."""

    def __init__(self, store, component: str = COMPONENT):
        self._store = store
        self._component = component

    def event(self, request: RoleRequest, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{request.name}.",
                namespace=request.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=f"{CRD_GROUP}/{CRD_VERSION}",
                kind="RoleRequest",
                name=request.name,
                namespace=request.namespace,
                uid=request.metadata.get("uid"),
                resource_version=request.metadata.get("resourceVersion"),
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self._component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._store.create_event(request.namespace, body)
        except Exception as e:
            logger.warning(f"⚠️  [{request.key}] could not record event {reason}: {e}")

    def normal(self, request: RoleRequest, reason: str, message: str) -> None:
        self.event(request, EVENT_NORMAL, reason, message)

    def warning(self, request: RoleRequest, reason: str, message: str) -> None:
        self.event(request, EVENT_WARNING, reason, message)
