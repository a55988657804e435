"""
Tenant permission oracle and approver discovery shared by the controllers.
"""

import logging
import re

from kubernetes.client.rest import ApiException

from controller.config import (
    GENERATED_SELECTOR, LABEL_CLUSTER_UID, LABEL_TENANT, LABEL_TENANT_UID, SYSTEM_NAMESPACE,
)

logger = logging.getLogger(__name__)

APPROVER_BINDING = re.compile(r"(owner|admin|manager)")
_EMAIL = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


def is_email(value: str) -> bool:
    return bool(value) and bool(_EMAIL.match(value))


def local_cluster_uid(store) -> str:
    """The UID of kube-system identifies this cluster."""
    return store.get_namespace(SYSTEM_NAMESPACE).metadata.uid


def check_namespace_permitted(store, namespace: str) -> tuple[bool, dict]:
    """Return ``(permitted, namespace_labels)`` for objects living in ``namespace``.

    Namespaces stamped with another cluster's UID were propagated by a
    federated deployment; their lifecycle is owned elsewhere, so they are
    always permitted. Local namespaces need an enabled tenant whose UID
    matches the one recorded on the namespace.

    Raises ApiException for anything other than a missing tenant.
    """
    cluster_uid = local_cluster_uid(store)
    ns = store.get_namespace(namespace)
    labels = dict(ns.metadata.labels or {})
    if labels.get(LABEL_CLUSTER_UID) != cluster_uid:
        return True, labels

    tenant_name = labels.get(LABEL_TENANT, "").lower()
    if not tenant_name:
        return False, labels
    try:
        tenant = store.get_tenant(tenant_name)
    except ApiException as e:
        if e.status == 404:
            logger.info(f"👻 tenant {tenant_name} of namespace {namespace} does not exist")
            return False, labels
        raise
    tenant_uid = (tenant.get("metadata") or {}).get("uid", "")
    enabled = bool((tenant.get("spec") or {}).get("enabled", False))
    return tenant_uid == labels.get(LABEL_TENANT_UID) and enabled, labels


def approver_emails(store, namespace: str, request_name: str) -> list[str]:
    """Collect addresses allowed to approve ``request_name``.

    Only controller-generated RoleBindings in the namespace whose name marks
    an owner/admin/manager role are considered; ClusterRoleBindings are
    ignored to keep cluster admins out of every tenant's mail.
    """
    emails: list[str] = []
    for binding in store.list_role_bindings(namespace, label_selector=GENERATED_SELECTOR):
        if not APPROVER_BINDING.search(binding.metadata.name or ""):
            continue
        for subject in binding.subjects or []:
            if subject.kind != "User" or not is_email(subject.name):
                continue
            if subject.name in emails:
                continue
            try:
                allowed = store.check_access(subject.name, namespace, "update", "rolerequests", request_name)
            except ApiException as e:
                logger.warning(f"⚠️  access review for {subject.name} in {namespace} failed: {e.status}")
                continue
            if allowed:
                emails.append(subject.name)
    return emails
