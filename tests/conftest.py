import copy
import itertools
import queue
import threading
from datetime import datetime, timedelta, timezone

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from controller.config import LABEL_CLUSTER_UID, LABEL_TENANT, LABEL_TENANT_UID
from controller.informer import RoleRequestInformer
from controller.models import AcceptableUsePolicy, RoleRequest
from controller.rolerequest import RoleRequestController

CLUSTER_UID = "cluster-uid-1"
TENANT_UID = "tenant-uid-1"
NAMESPACE = "team-a"
T0 = datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)


def api_error(status: int) -> ApiException:
    return ApiException(status=status, reason={404: "Not Found", 409: "Conflict"}.get(status, "Error"))


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeWatch:
    def __init__(self):
        self._events: queue.Queue = queue.Queue()
        self.stopped = False

    def emit(self, event_type: str, request: RoleRequest) -> None:
        self._events.put((event_type, copy.deepcopy(request)))

    def close(self) -> None:
        self._events.put(None)

    def __iter__(self):
        while True:
            item = self._events.get()
            if item is None:
                return
            yield item

    def stop(self) -> None:
        self.stopped = True
        self._events.put(None)


class FakeStore:
    """In-memory stand-in for KubeStore with API-server-like 404/409 behavior."""

    def __init__(self):
        self.lock = threading.RLock()
        self._rv = itertools.count(1)
        self.role_requests: dict[str, RoleRequest] = {}
        self.policies: dict[str, AcceptableUsePolicy] = {}
        self.namespaces: dict[str, client.V1Namespace] = {}
        self.tenants: dict[str, dict] = {}
        self.roles: dict[str, set] = {}
        self.cluster_roles: set = set()
        self.role_bindings: dict[tuple[str, str], client.V1RoleBinding] = {}
        self.allowed: set[tuple[str, str]] = set()
        self.events: list[client.CoreV1Event] = []
        self.calls: list[str] = []
        self.failures: dict[str, ApiException] = {}
        self.watches: list[FakeWatch] = []
        self.watch_failures = 0
        self.list_bindings_hook = None

    # -- helpers -----------------------------------------------------------

    def _call(self, op: str) -> None:
        self.calls.append(op)
        if op in self.failures:
            raise self.failures[op]

    def count(self, op: str) -> int:
        return self.calls.count(op)

    def add_namespace(self, name: str, uid: str = "", labels: dict | None = None) -> None:
        self.namespaces[name] = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, uid=uid or f"{name}-uid", labels=labels or {}),
        )

    def add_request(self, request: RoleRequest) -> RoleRequest:
        with self.lock:
            stored = request.deep_copy()
            stored.metadata.setdefault("uid", f"uid-{stored.name}")
            stored.metadata["resourceVersion"] = str(next(self._rv))
            self.role_requests[stored.key] = stored
            return stored.deep_copy()

    def events_with_reason(self, reason: str) -> list:
        return [e for e in self.events if e.reason == reason]

    # -- RoleRequests ------------------------------------------------------

    def get_role_request(self, namespace: str, name: str) -> RoleRequest:
        self._call("get_role_request")
        with self.lock:
            request = self.role_requests.get(f"{namespace}/{name}")
            if request is None:
                raise api_error(404)
            return request.deep_copy()

    def list_role_requests(self) -> list[RoleRequest]:
        self._call("list_role_requests")
        with self.lock:
            return [r.deep_copy() for r in self.role_requests.values()]

    def _check_rv(self, stored: RoleRequest, request: RoleRequest) -> None:
        rv = request.metadata.get("resourceVersion")
        if rv is not None and rv != stored.metadata.get("resourceVersion"):
            raise api_error(409)

    def update_role_request(self, request: RoleRequest) -> RoleRequest:
        self._call("update_role_request")
        with self.lock:
            stored = self.role_requests.get(request.key)
            if stored is None:
                raise api_error(404)
            self._check_rv(stored, request)
            # status is a subresource: the main update never touches it
            stored.metadata = copy.deepcopy(request.metadata)
            stored.metadata["resourceVersion"] = str(next(self._rv))
            stored.spec = copy.deepcopy(request.spec)
            return stored.deep_copy()

    def update_role_request_status(self, request: RoleRequest) -> RoleRequest:
        self._call("update_role_request_status")
        with self.lock:
            stored = self.role_requests.get(request.key)
            if stored is None:
                raise api_error(404)
            self._check_rv(stored, request)
            stored.status = copy.deepcopy(request.status)
            stored.metadata["resourceVersion"] = str(next(self._rv))
            return stored.deep_copy()

    def delete_role_request(self, namespace: str, name: str) -> None:
        self._call("delete_role_request")
        with self.lock:
            if self.role_requests.pop(f"{namespace}/{name}", None) is None:
                raise api_error(404)

    def watch_role_requests(self, timeout_seconds: int = 600) -> FakeWatch:
        self._call("watch_role_requests")
        if self.watch_failures > 0:
            self.watch_failures -= 1
            raise api_error(500)
        w = FakeWatch()
        self.watches.append(w)
        return w

    # -- AcceptableUsePolicies --------------------------------------------

    def get_policy(self, name: str) -> AcceptableUsePolicy:
        self._call("get_policy")
        with self.lock:
            policy = self.policies.get(name)
            if policy is None:
                raise api_error(404)
            return copy.deepcopy(policy)

    def list_policies(self, label_selector: str = "") -> list[AcceptableUsePolicy]:
        self._call("list_policies")
        key, _, value = label_selector.partition("=")
        with self.lock:
            return [
                copy.deepcopy(p) for p in self.policies.values()
                if not label_selector or p.labels.get(key) == value
            ]

    def create_policy(self, policy: AcceptableUsePolicy) -> AcceptableUsePolicy:
        self._call("create_policy")
        with self.lock:
            if policy.name in self.policies:
                raise api_error(409)
            self.policies[policy.name] = copy.deepcopy(policy)
            return copy.deepcopy(policy)

    def accept_policy(self, name: str) -> None:
        with self.lock:
            self.policies[name].accepted = True

    # -- Namespaces & tenants ---------------------------------------------

    def get_namespace(self, name: str) -> client.V1Namespace:
        self._call("get_namespace")
        ns = self.namespaces.get(name)
        if ns is None:
            raise api_error(404)
        return copy.deepcopy(ns)

    def get_tenant(self, name: str) -> dict:
        self._call("get_tenant")
        tenant = self.tenants.get(name)
        if tenant is None:
            raise api_error(404)
        return copy.deepcopy(tenant)

    # -- RBAC ---------------------------------------------------------------

    def list_role_names(self, namespace: str) -> list[str]:
        self._call("list_role_names")
        return sorted(self.roles.get(namespace, set()))

    def list_cluster_role_names(self) -> list[str]:
        self._call("list_cluster_role_names")
        return sorted(self.cluster_roles)

    def list_role_bindings(self, namespace: str, label_selector: str = "") -> list[client.V1RoleBinding]:
        self._call("list_role_bindings")
        key, _, value = label_selector.partition("=")
        with self.lock:
            result = [
                copy.deepcopy(b) for (ns, _), b in self.role_bindings.items()
                if ns == namespace and (not label_selector or (b.metadata.labels or {}).get(key) == value)
            ]
        if self.list_bindings_hook is not None:
            self.list_bindings_hook()
        return result

    def create_role_binding(self, namespace: str, binding: client.V1RoleBinding) -> client.V1RoleBinding:
        self._call("create_role_binding")
        with self.lock:
            key = (namespace, binding.metadata.name)
            if key in self.role_bindings:
                raise api_error(409)
            stored = copy.deepcopy(binding)
            stored.metadata.resource_version = str(next(self._rv))
            self.role_bindings[key] = stored
            return copy.deepcopy(stored)

    def replace_role_binding(self, namespace: str, binding: client.V1RoleBinding) -> client.V1RoleBinding:
        self._call("replace_role_binding")
        with self.lock:
            key = (namespace, binding.metadata.name)
            stored = self.role_bindings.get(key)
            if stored is None:
                raise api_error(404)
            if binding.metadata.resource_version != stored.metadata.resource_version:
                raise api_error(409)
            stored = copy.deepcopy(binding)
            stored.metadata.resource_version = str(next(self._rv))
            self.role_bindings[key] = stored
            return copy.deepcopy(stored)

    def add_binding(self, namespace: str, name: str, users: list[str], generated: bool = True) -> None:
        labels = {"tenancy.opsmode.io/generated": "true"} if generated else {}
        self.role_bindings[(namespace, name)] = client.V1RoleBinding(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels,
                                         resource_version=str(next(self._rv))),
            role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name="admin"),
            subjects=[client.RbacV1Subject(kind="User", name=u, api_group="rbac.authorization.k8s.io")
                      for u in users],
        )

    def check_access(self, user: str, namespace: str, verb: str, resource: str, name: str = "") -> bool:
        self._call("check_access")
        return (user, namespace) in self.allowed

    # -- Events ---------------------------------------------------------------

    def create_event(self, namespace: str, event: client.CoreV1Event) -> None:
        self.events.append(event)


class RecordingNotifier:
    """Runs submitted work inline and records what would have been sent."""

    def __init__(self):
        self.sent: list[tuple[str, object]] = []

    def submit(self, fn, *args, **kwargs):
        fn(*args, **kwargs)

    def send(self, kind, content) -> None:
        if content.recipients:
            self.sent.append((kind, content))

    def dispatch(self, kind, content) -> None:
        self.send(kind, content)

    def of_kind(self, kind: str) -> list:
        return [c for k, c in self.sent if k == kind]

    def shutdown(self, wait: bool = True) -> None:
        pass


class FakeCredentials:
    def __init__(self):
        self.cert_error: Exception | None = None
        self.config_error: Exception | None = None
        self.issued: list[tuple[str, str, str]] = []
        self.kubeconfigs: list[tuple[str, str, str]] = []

    def generate_client_cert(self, namespace, policy_name, email):
        if self.cert_error is not None:
            raise self.cert_error
        self.issued.append((namespace, policy_name, email))
        return b"cert", b"key"

    def make_kubeconfig(self, namespace, policy_name, email, cert_pem, key_pem):
        if self.config_error is not None:
            raise self.config_error
        self.kubeconfigs.append((namespace, policy_name, email))
        return f"{policy_name}-kubeconfig"


def make_request(name: str = "alice-edit", namespace: str = NAMESPACE, email: str = "alice@example.org",
                 kind: str = "ClusterRole", role: str = "edit", approved: bool = False,
                 authentication: list[str] | None = None, labels: dict | None = None) -> RoleRequest:
    return RoleRequest.from_dict({
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "spec": {
            "firstName": "Alice",
            "lastName": "Liddell",
            "email": email,
            "roleRef": {"kind": kind, "name": role},
            "approved": approved,
            "authentication": authentication if authentication is not None else ["oidc"],
        },
    })


@pytest.fixture
def store():
    s = FakeStore()
    s.add_namespace("kube-system", uid=CLUSTER_UID)
    s.add_namespace(NAMESPACE, labels={
        LABEL_CLUSTER_UID: CLUSTER_UID,
        LABEL_TENANT: "Team-A",
        LABEL_TENANT_UID: TENANT_UID,
    })
    s.tenants["team-a"] = {"metadata": {"name": "team-a", "uid": TENANT_UID}, "spec": {"enabled": True}}
    s.cluster_roles.update({"edit", "view"})
    s.roles[NAMESPACE] = {"viewer"}
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def controller(store, notifier, credentials, clock):
    informer = RoleRequestInformer(store)
    ctrl = RoleRequestController(store, informer, notifier, credentials=credentials, clock=clock)
    yield ctrl
    ctrl.queue.shut_down()


def reconcile(controller: RoleRequestController, store: FakeStore, key: str) -> RoleRequest | None:
    """Refresh the informer from the store, as the watch would, then sync ``key``."""
    namespace, name = key.split("/")
    current = store.role_requests.get(key)
    if current is not None:
        controller.informer.handle_event("MODIFIED", current.to_dict())
    else:
        controller.informer.handle_event("DELETED", {"metadata": {"namespace": namespace, "name": name}})
    controller.sync_handler(key)
    stored = store.role_requests.get(key)
    return stored.deep_copy() if stored is not None else None
