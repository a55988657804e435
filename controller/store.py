"""
Kubernetes client adapter for the controller.

Wraps the official ``kubernetes`` client behind the handful of calls the
reconciler and the expiry scheduler need. Every component receives a store
instance in its constructor; nothing here keeps module-level clients.

All methods let ``kubernetes.client.rest.ApiException`` propagate so callers
can branch on ``e.status`` (404 absent, 409 already exists / conflict).
"""

import logging

from kubernetes import client, config, watch

from controller.config import CRD_GROUP, CRD_VERSION
from controller.models import AcceptableUsePolicy, RoleRequest

logger = logging.getLogger(__name__)

ROLE_REQUESTS = "rolerequests"
POLICIES = "acceptableusepolicies"
TENANTS = "tenants"


def load_api_client() -> client.ApiClient:
    """Return an ApiClient using in-cluster config, falling back to kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.ApiClient()


class RoleRequestWatch:
    """Iterable watch stream over all RoleRequests yielding ``(event_type, RoleRequest)``."""

    def __init__(self, custom: client.CustomObjectsApi, timeout_seconds: int):
        self._watch = watch.Watch()
        self._custom = custom
        self._timeout_seconds = timeout_seconds

    def __iter__(self):
        stream = self._watch.stream(
            self._custom.list_cluster_custom_object,
            group=CRD_GROUP, version=CRD_VERSION, plural=ROLE_REQUESTS,
            timeout_seconds=self._timeout_seconds,
        )
        for event in stream:
            event_type = event.get("type")
            obj = event.get("object")
            if event_type == "ERROR":
                raise RuntimeError(f"watch error: {obj}")
            if not isinstance(obj, dict):
                continue
            yield event_type, RoleRequest.from_dict(obj)

    def stop(self) -> None:
        self._watch.stop()


class KubeStore:
    def __init__(self, api_client: client.ApiClient | None = None):
        self.api_client = api_client
        self.custom = client.CustomObjectsApi(api_client=api_client)
        self.core_v1 = client.CoreV1Api(api_client=api_client)
        self.rbac_v1 = client.RbacAuthorizationV1Api(api_client=api_client)
        self.authz_v1 = client.AuthorizationV1Api(api_client=api_client)

    # -- RoleRequests -------------------------------------------------------

    def get_role_request(self, namespace: str, name: str) -> RoleRequest:
        body = self.custom.get_namespaced_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, namespace=namespace,
            plural=ROLE_REQUESTS, name=name,
        )
        return RoleRequest.from_dict(body)

    def list_role_requests(self) -> list[RoleRequest]:
        result = self.custom.list_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=ROLE_REQUESTS,
        )
        return [RoleRequest.from_dict(item) for item in result.get("items", [])]

    def update_role_request(self, request: RoleRequest) -> RoleRequest:
        body = self.custom.replace_namespaced_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, namespace=request.namespace,
            plural=ROLE_REQUESTS, name=request.name, body=request.to_dict(),
        )
        return RoleRequest.from_dict(body)

    def update_role_request_status(self, request: RoleRequest) -> RoleRequest:
        # resourceVersion travels in the body, so a stale copy gets a 409
        body = self.custom.replace_namespaced_custom_object_status(
            group=CRD_GROUP, version=CRD_VERSION, namespace=request.namespace,
            plural=ROLE_REQUESTS, name=request.name, body=request.to_dict(),
        )
        return RoleRequest.from_dict(body)

    def delete_role_request(self, namespace: str, name: str) -> None:
        self.custom.delete_namespaced_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, namespace=namespace,
            plural=ROLE_REQUESTS, name=name,
        )

    def watch_role_requests(self, timeout_seconds: int = 600) -> RoleRequestWatch:
        return RoleRequestWatch(self.custom, timeout_seconds)

    # -- AcceptableUsePolicies ---------------------------------------------

    def get_policy(self, name: str) -> AcceptableUsePolicy:
        body = self.custom.get_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=POLICIES, name=name,
        )
        return AcceptableUsePolicy.from_dict(body)

    def list_policies(self, label_selector: str = "") -> list[AcceptableUsePolicy]:
        result = self.custom.list_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=POLICIES,
            label_selector=label_selector,
        )
        return [AcceptableUsePolicy.from_dict(item) for item in result.get("items", [])]

    def create_policy(self, policy: AcceptableUsePolicy) -> AcceptableUsePolicy:
        body = self.custom.create_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=POLICIES, body=policy.to_dict(),
        )
        return AcceptableUsePolicy.from_dict(body)

    # -- Namespaces & tenants ----------------------------------------------

    def get_namespace(self, name: str) -> client.V1Namespace:
        return self.core_v1.read_namespace(name=name)

    def get_tenant(self, name: str) -> dict:
        return self.custom.get_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=TENANTS, name=name,
        )

    # -- RBAC --------------------------------------------------------------

    def list_role_names(self, namespace: str) -> list[str]:
        return [r.metadata.name for r in self.rbac_v1.list_namespaced_role(namespace=namespace).items]

    def list_cluster_role_names(self) -> list[str]:
        return [r.metadata.name for r in self.rbac_v1.list_cluster_role().items]

    def list_role_bindings(self, namespace: str, label_selector: str = "") -> list[client.V1RoleBinding]:
        return self.rbac_v1.list_namespaced_role_binding(
            namespace=namespace, label_selector=label_selector,
        ).items

    def create_role_binding(self, namespace: str, binding: client.V1RoleBinding) -> client.V1RoleBinding:
        return self.rbac_v1.create_namespaced_role_binding(namespace=namespace, body=binding)

    def replace_role_binding(self, namespace: str, binding: client.V1RoleBinding) -> client.V1RoleBinding:
        return self.rbac_v1.replace_namespaced_role_binding(
            name=binding.metadata.name, namespace=namespace, body=binding,
        )

    def check_access(self, user: str, namespace: str, verb: str, resource: str, name: str = "") -> bool:
        """Ask the cluster authorizer whether ``user`` may ``verb`` the resource."""
        review = client.V1SubjectAccessReview(
            spec=client.V1SubjectAccessReviewSpec(
                user=user,
                resource_attributes=client.V1ResourceAttributes(
                    group=CRD_GROUP, resource=resource, namespace=namespace,
                    verb=verb, name=name or None,
                ),
            )
        )
        result = self.authz_v1.create_subject_access_review(body=review)
        return bool(result.status and result.status.allowed)

    # -- Events ------------------------------------------------------------

    def create_event(self, namespace: str, event: client.CoreV1Event) -> None:
        self.core_v1.create_namespaced_event(namespace=namespace, body=event)
