"""
Typed views over the custom resources handled by the controller.

The API server hands out plain dicts; these dataclasses give the reconciler
structural equality (spec changes, status deltas) without reflection.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone

from controller.config import CRD_GROUP, CRD_VERSION

STATE_PENDING = "Pending"
STATE_APPROVED = "Approved"
STATE_FAILURE = "Failure"

MSG_ROLE_NOT_FOUND = "role not found"
MSG_POLICY_FAILED = "policy creation failed"
MSG_AWAITING_POLICY = "awaiting acceptable-use-policy agreement"
MSG_AWAITING_APPROVAL = "awaiting role approval"
MSG_APPROVED = "role approved"
MSG_BINDING_FAILED = "binding failed"

AUTH_CLIENT_CERTIFICATE = "client-certificate"
AUTH_OIDC = "oidc"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value) -> datetime | None:
    """Parse an RFC 3339 timestamp as written by the API server."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class RoleRef:
    kind: str = ""
    name: str = ""


@dataclass
class RoleRequestSpec:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    role_ref: RoleRef = field(default_factory=RoleRef)
    approved: bool = False
    authentication: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RoleRequestSpec":
        data = data or {}
        ref = data.get("roleRef") or {}
        return cls(
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            email=data.get("email", ""),
            role_ref=RoleRef(kind=ref.get("kind", ""), name=ref.get("name", "")),
            approved=bool(data.get("approved", False)),
            authentication=list(data.get("authentication") or []),
        )

    def to_dict(self) -> dict:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "roleRef": {"kind": self.role_ref.kind, "name": self.role_ref.name},
            "approved": self.approved,
            "authentication": list(self.authentication),
        }


@dataclass
class RoleRequestStatus:
    state: str = ""
    message: str = ""
    expiry: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "RoleRequestStatus":
        data = data or {}
        return cls(
            state=data.get("state", "") or "",
            message=data.get("message", "") or "",
            expiry=parse_time(data.get("expiry")),
        )

    def to_dict(self) -> dict:
        out = {"state": self.state, "message": self.message}
        if self.expiry is not None:
            out["expiry"] = format_time(self.expiry)
        return out


@dataclass
class RoleRequest:
    metadata: dict
    spec: RoleRequestSpec = field(default_factory=RoleRequestSpec)
    status: RoleRequestStatus = field(default_factory=RoleRequestStatus)

    @classmethod
    def from_dict(cls, body) -> "RoleRequest":
        # kopf bodies are mappings but not dicts; normalise before copying
        body = dict(body)
        return cls(
            metadata=copy.deepcopy(dict(body.get("metadata") or {})),
            spec=RoleRequestSpec.from_dict(dict(body.get("spec") or {})),
            status=RoleRequestStatus.from_dict(dict(body.get("status") or {})),
        )

    def to_dict(self) -> dict:
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": "RoleRequest",
            "metadata": copy.deepcopy(self.metadata),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    def deep_copy(self) -> "RoleRequest":
        return copy.deepcopy(self)

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def labels(self) -> dict:
        return dict(self.metadata.get("labels") or {})

    def set_label(self, key: str, value: str) -> None:
        labels = self.labels
        labels[key] = value
        self.metadata["labels"] = labels

    @property
    def full_name(self) -> str:
        return f"{self.spec.first_name} {self.spec.last_name}".strip()


@dataclass
class AcceptableUsePolicy:
    name: str
    email: str = ""
    accepted: bool = False
    labels: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, body) -> "AcceptableUsePolicy":
        body = dict(body)
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            email=spec.get("email", ""),
            accepted=bool(spec.get("accepted", False)),
            labels=dict(meta.get("labels") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": "AcceptableUsePolicy",
            "metadata": {"name": self.name, "labels": dict(self.labels)},
            "spec": {"email": self.email, "accepted": self.accepted},
        }


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` work queue key."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"invalid resource key: {key!r}")
