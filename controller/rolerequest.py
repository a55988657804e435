"""
RoleRequest controller.

Keys flow from the informer into a rate-limited work queue; a fixed pool of
worker threads pops them and drives each request through the approval
procedure:

    expiry → tenant permission → role exists → acceptable use policy
           → policy accepted → approved → role binding → credentials

Each step may settle the status and stop; the order is load-bearing (a bad
role reference must never spawn a policy, a denied namespace must never get
a status write). Status is written back only when it changed.
"""

import copy
import logging
import threading
import uuid
from datetime import timedelta

from kubernetes import client
from kubernetes.client.rest import ApiException

from controller import events
from controller.config import (
    APPROVAL_TTL_HOURS, GENERATED_SELECTOR, LABEL_AUP, LABEL_CLUSTER_UID, LABEL_GENERATED,
    MAX_RETRIES,
)
from controller.events import audit
from controller.informer import ResourceEventHandler
from controller.models import (
    AUTH_CLIENT_CERTIFICATE, AUTH_OIDC, MSG_APPROVED, MSG_AWAITING_APPROVAL, MSG_AWAITING_POLICY,
    MSG_BINDING_FAILED, MSG_POLICY_FAILED, MSG_ROLE_NOT_FOUND, STATE_APPROVED, STATE_FAILURE,
    STATE_PENDING, AcceptableUsePolicy, RoleRequest, format_time, now_utc, split_key,
)
from controller.notifier import ROLE_REQUEST_APPROVED, ROLE_REQUEST_PENDING, NotificationContent
from controller.permission import approver_emails, check_namespace_permitted
from controller.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

BINDING_ATTEMPTS = 3
RBAC_API_GROUP = "rbac.authorization.k8s.io"


class TransientError(Exception):
    """An API call failed; the key goes back on the queue with backoff."""


def binding_name(kind: str, name: str) -> str:
    return f"tenancy:{kind.lower()}:{name.lower()}"


class RoleRequestController(ResourceEventHandler):
    def __init__(self, store, informer, notifier, credentials=None, recorder=None,
                 audit_db=None, expiry=None, queue: RateLimitingQueue | None = None,
                 max_retries: int = MAX_RETRIES,
                 ttl: timedelta = timedelta(hours=APPROVAL_TTL_HOURS),
                 clock=now_utc, console_url: str = ""):
        self.store = store
        self.informer = informer
        self.notifier = notifier
        self.credentials = credentials
        self.recorder = recorder or events.EventRecorder(store)
        self.audit_db = audit_db
        self.expiry = expiry
        self.queue = queue or RateLimitingQueue("RoleRequests")
        self.max_retries = max_retries
        self.ttl = ttl
        self.clock = clock
        self.console_url = console_url
        informer.add_event_handler(self)

    # ------------------------------------------------------------------
    # informer callbacks
    # ------------------------------------------------------------------

    def on_add(self, obj: RoleRequest) -> None:
        self.enqueue(obj)

    def on_update(self, old: RoleRequest, new: RoleRequest) -> None:
        # status and label churn (including our own writes) must not requeue
        if old.spec == new.spec:
            return
        self.enqueue(new)

    def enqueue(self, obj: RoleRequest) -> None:
        self.queue.add(obj.key)

    # ------------------------------------------------------------------
    # worker pool
    # ------------------------------------------------------------------

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start workers and the expiry scheduler; block until ``stop_event`` is set."""
        logger.info("🚀 starting RoleRequest controller")
        if not self.informer.wait_for_cache_sync(stop_event):
            self.queue.shut_down()
            raise RuntimeError("failed to wait for caches to sync")

        threads = [
            threading.Thread(target=self.run_worker, name=f"rolerequest-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        if self.expiry is not None:
            threads.append(threading.Thread(target=self.expiry.run, name="rolerequest-expiry", daemon=True))
        for t in threads:
            t.start()
        logger.info(f"✅ started {workers} workers")

        stop_event.wait()
        logger.info("🛑 shutting down workers")
        self.queue.shut_down()
        if self.expiry is not None:
            self.expiry.terminate()
        for t in threads:
            t.join()
        self.notifier.shutdown(wait=True)
        logger.info("👋 RoleRequest controller stopped")

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        if key is None:
            return True
        try:
            self.sync_handler(key)
        except Exception as e:
            if self.queue.num_requeues(key) < self.max_retries:
                logger.warning(f"🔁 [{key}] error syncing: {type(e).__name__}: {e} — requeuing")
                self.queue.add_rate_limited(key)
            else:
                logger.error(f"💥 [{key}] dropping after {self.max_retries} retries: {type(e).__name__}: {e}")
                self.queue.forget(key)
        else:
            self.queue.forget(key)
            logger.debug(f"[{key}] successfully synced")
        finally:
            self.queue.done(key)
        return True

    # ------------------------------------------------------------------
    # reconcile
    # ------------------------------------------------------------------

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_key(key)
        except ValueError as e:
            logger.error(f"❌ {e}")
            return

        request = self.informer.get(namespace, name)
        if request is None:
            logger.info(f"👻 [{key}] in work queue no longer exists")
            return

        if request.status.state != STATE_APPROVED:
            self.apply_procedure(request.deep_copy())
        self.recorder.normal(request, events.REASON_SYNCED, "Role request synced successfully")

    def apply_procedure(self, request: RoleRequest) -> None:
        old_status = copy.deepcopy(request.status)
        exists = self._procedure(request, old_status)
        if exists and request.status != old_status:
            self._write_status(request)

    def _procedure(self, request: RoleRequest, old_status) -> bool:
        """Run the approval steps. Returns False when the request was deleted."""
        if request.status.expiry is None:
            request.status.expiry = (self.clock() + self.ttl).replace(microsecond=0)

        try:
            permitted, ns_labels = check_namespace_permitted(self.store, request.namespace)
        except ApiException as e:
            raise TransientError(f"namespace permission check failed: {e.status} {e.reason}") from e
        if not permitted:
            self._delete_unpermitted(request)
            return False
        cluster_uid = ns_labels.get(LABEL_CLUSTER_UID, "")

        if not self._role_exists(request):
            self.recorder.warning(request, events.REASON_NOT_FOUND, "Requested Role / ClusterRole does not exist")
            self._set_status(request, STATE_FAILURE, MSG_ROLE_NOT_FOUND)
            return True
        self.recorder.normal(request, events.REASON_FOUND, "Requested Role / ClusterRole found successfully")

        policy = self._resolve_policy(request, cluster_uid)
        if policy is None:
            self.recorder.warning(request, events.REASON_POLICY_FAILED, "Acceptable use policy creation failed")
            self._set_status(request, STATE_FAILURE, MSG_POLICY_FAILED)
            return True

        if not policy.accepted:
            self.recorder.normal(request, events.REASON_NOT_AGREED, "Waiting for the acceptable use policy to be agreed")
            self._set_status(request, STATE_PENDING, MSG_AWAITING_POLICY)
            return True

        if not request.spec.approved:
            self.recorder.warning(request, events.REASON_NOT_APPROVED, "Waiting for the requested role to be approved")
            self._set_status(request, STATE_PENDING, MSG_AWAITING_APPROVAL)
            if old_status.state == STATE_PENDING and old_status.message == MSG_AWAITING_APPROVAL:
                return True
            self._notify_approvers(request, cluster_uid)
            return True

        self._approve(request, policy, cluster_uid)
        return True

    def _set_status(self, request: RoleRequest, state: str, message: str) -> None:
        request.status.state = state
        request.status.message = message

    def _write_status(self, request: RoleRequest) -> None:
        """Persist ``request.status``.

        A conflict means someone else touched the object after we read it.
        The side effects of this pass (bindings, certificates, mails) already
        happened, so the computed status is carried over onto a fresh read
        instead of running the procedure again.
        """
        try:
            self.store.update_role_request_status(request)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"👻 [{request.key}] deleted before its status could be written")
                return
            if e.status != 409:
                raise TransientError(f"status update failed: {e.status} {e.reason}") from e
            if not self._rewrite_status(request):
                return
        logger.info(f"📝 [{request.key}] status → {request.status.state}: {request.status.message}")
        if self.audit_db is not None:
            fields = dict(
                namespace=request.namespace,
                email=request.spec.email,
                role_kind=request.spec.role_ref.kind,
                role_name=request.spec.role_ref.name,
                state=request.status.state,
                message=request.status.message,
                expires_at=request.status.expiry,
            )
            if request.status.state == STATE_APPROVED:
                fields["approved_at"] = self.clock()
            self.audit_db.upsert_request(request.key, **fields)

    def _rewrite_status(self, request: RoleRequest) -> bool:
        """Retry a conflicting status write on the latest object. False when nothing was written."""
        try:
            latest = self.store.get_role_request(request.namespace, request.name)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"👻 [{request.key}] deleted before its status could be written")
                return False
            raise TransientError(f"re-reading after status conflict failed: {e.status} {e.reason}") from e
        if latest.spec != request.spec:
            # the spec update event requeues the key; that pass decides afresh
            logger.info(f"🔁 [{request.key}] spec changed while reconciling, dropping stale status")
            return False
        latest.status = copy.deepcopy(request.status)
        try:
            self.store.update_role_request_status(latest)
        except ApiException as e:
            raise TransientError(f"status update failed after conflict: {e.status} {e.reason}") from e
        return True

    def _record(self, request: RoleRequest, event: str, detail: str = "") -> None:
        audit(event, request.key, requester=request.spec.email, namespace=request.namespace,
              role=f"{request.spec.role_ref.kind}/{request.spec.role_ref.name}")
        if self.audit_db is not None:
            self.audit_db.log_audit(request.key, event, actor=request.spec.email, detail=detail)

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    def _delete_unpermitted(self, request: RoleRequest) -> None:
        logger.info(f"⛔ [{request.key}] namespace is not permitted (tenant missing or disabled) — deleting")
        self.recorder.warning(request, events.REASON_DELETED, "Namespace is not permitted by its tenant")
        try:
            self.store.delete_role_request(request.namespace, request.name)
        except ApiException as e:
            if e.status != 404:
                raise TransientError(f"delete failed: {e.status} {e.reason}") from e
        self._record(request, "request.deleted", detail="namespace not permitted")
        if self.audit_db is not None:
            self.audit_db.upsert_request(
                request.key, namespace=request.namespace, email=request.spec.email,
                deleted_at=self.clock(),
            )

    def _role_exists(self, request: RoleRequest) -> bool:
        ref = request.spec.role_ref
        try:
            if ref.kind == "ClusterRole":
                names = self.store.list_cluster_role_names()
            elif ref.kind == "Role":
                names = self.store.list_role_names(request.namespace)
            else:
                return False
        except ApiException as e:
            raise TransientError(f"listing {ref.kind}s failed: {e.status} {e.reason}") from e
        return ref.name in names

    def _resolve_policy(self, request: RoleRequest, cluster_uid: str) -> AcceptableUsePolicy | None:
        """Find or create the requester's acceptable use policy.

        Returns None only when a new policy could not be created.
        """
        email = request.spec.email
        linked = request.labels.get(LABEL_AUP, "")
        if linked:
            try:
                policy = self.store.get_policy(linked)
            except ApiException as e:
                if e.status != 404:
                    raise TransientError(f"reading policy {linked} failed: {e.status}") from e
                policy = None
            if policy is not None and policy.email == email:
                return policy
            logger.warning(f"⚠️  [{request.key}] linked policy {linked} is missing or belongs to someone else")

        try:
            generated = self.store.list_policies(label_selector=GENERATED_SELECTOR)
        except ApiException as e:
            raise TransientError(f"listing policies failed: {e.status} {e.reason}") from e
        for policy in generated:
            if policy.email == email:
                self._link_policy(request, policy.name)
                return policy

        policy = AcceptableUsePolicy(
            name=f"{request.name}-{uuid.uuid4().hex[:6]}",
            email=email,
            accepted=False,
            labels={LABEL_GENERATED: "true", LABEL_CLUSTER_UID: cluster_uid},
        )
        try:
            created = self.store.create_policy(policy)
        except ApiException as e:
            logger.error(f"💥 [{request.key}] creating policy {policy.name} failed: {e.status} {e.reason}")
            return None
        logger.info(f"📜 [{request.key}] created acceptable use policy {created.name} for {email}")
        self._record(request, "policy.created", detail=created.name)
        self._link_policy(request, created.name)
        return created

    def _link_policy(self, request: RoleRequest, policy_name: str) -> None:
        request.set_label(LABEL_AUP, policy_name)
        try:
            updated = self.store.update_role_request(request)
        except ApiException as e:
            logger.warning(f"⚠️  [{request.key}] could not label with policy {policy_name}: {e.status} {e.reason}")
            return
        # keep the working status; only metadata (labels, resourceVersion) comes back
        request.metadata = updated.metadata
        self.recorder.normal(request, events.REASON_UPDATED, "Acceptable use policy label updated successfully")

    def _notify_approvers(self, request: RoleRequest, cluster_uid: str) -> None:
        snapshot = request.deep_copy()
        self.notifier.submit(self._send_pending_notification, snapshot, cluster_uid)

    def _send_pending_notification(self, request: RoleRequest, cluster_uid: str) -> None:
        recipients = approver_emails(self.store, request.namespace, request.name)
        if not recipients:
            logger.info(f"📭 [{request.key}] no approver address found, not notifying")
            return
        self.notifier.send(ROLE_REQUEST_PENDING, self._content(request, cluster_uid, recipients))

    def _content(self, request: RoleRequest, cluster_uid: str, recipients: list[str],
                 methods: list[str] | None = None) -> NotificationContent:
        return NotificationContent(
            namespace=request.namespace,
            cluster=cluster_uid,
            name=request.full_name,
            username=request.spec.email,
            role_request=request.name,
            recipients=recipients,
            auth_methods=methods or [],
            console_url=self.console_url,
        )

    def _approve(self, request: RoleRequest, policy: AcceptableUsePolicy, cluster_uid: str) -> None:
        self.recorder.normal(request, events.REASON_APPROVED, "Requested role approved successfully")
        self._set_status(request, STATE_APPROVED, MSG_APPROVED)

        if not self._bind(request):
            self.recorder.warning(request, events.REASON_BINDING_FAILED, "Role binding failed")
            self._set_status(request, STATE_FAILURE, MSG_BINDING_FAILED)
            self._record(request, "binding.failed")
            return

        methods = self._provision(request, policy.name)
        self._record(request, "request.approved", detail=f"expires={format_time(request.status.expiry)} auth={','.join(methods)}")
        logger.info(f"✅ [{request.key}] role {request.spec.role_ref.kind}/{request.spec.role_ref.name} "
                    f"GRANTED to {request.spec.email} (auth={methods})")
        self.notifier.dispatch(ROLE_REQUEST_APPROVED,
                               self._content(request, cluster_uid, [request.spec.email], methods))

    def _bind(self, request: RoleRequest) -> bool:
        """Make sure the generated binding for the role carries the requester.

        Bindings are shared per role; concurrent approvals race on create or
        on the resourceVersion of the update and simply retry.
        """
        ref = request.spec.role_ref
        email = request.spec.email
        name = binding_name(ref.kind, ref.name)
        subject = client.RbacV1Subject(kind="User", name=email, api_group=RBAC_API_GROUP)

        for _ in range(BINDING_ATTEMPTS):
            try:
                bindings = self.store.list_role_bindings(request.namespace, label_selector=GENERATED_SELECTOR)
            except ApiException as e:
                raise TransientError(f"listing role bindings failed: {e.status} {e.reason}") from e
            existing = next((b for b in bindings if b.metadata.name == name), None)

            try:
                if existing is not None:
                    subjects = list(existing.subjects or [])
                    if any(s.kind == "User" and s.name == email for s in subjects):
                        return True
                    existing.subjects = subjects + [subject]
                    self.store.replace_role_binding(request.namespace, existing)
                    logger.info(f"🔗 [{request.key}] added {email} to RoleBinding={name}")
                else:
                    body = client.V1RoleBinding(
                        metadata=client.V1ObjectMeta(
                            name=name, namespace=request.namespace, labels={LABEL_GENERATED: "true"},
                        ),
                        role_ref=client.V1RoleRef(api_group=RBAC_API_GROUP, kind=ref.kind, name=ref.name),
                        subjects=[subject],
                    )
                    self.store.create_role_binding(request.namespace, body)
                    logger.info(f"🔗 [{request.key}] created RoleBinding={name} for {email}")
                return True
            except ApiException as e:
                if e.status == 409:
                    logger.info(f"🔁 [{request.key}] RoleBinding={name} changed underneath us, retrying")
                    continue
                logger.error(f"💥 [{request.key}] binding {name} failed: {e.status} {e.reason}")
                return False
        logger.error(f"💥 [{request.key}] binding {name} kept conflicting after {BINDING_ATTEMPTS} attempts")
        return False

    def _provision(self, request: RoleRequest, policy_name: str) -> list[str]:
        """Set up each requested authentication method. Failures only raise warning events."""
        methods: list[str] = []
        for method in request.spec.authentication:
            method = method.lower()
            if method in methods:
                continue
            if method == AUTH_CLIENT_CERTIFICATE:
                if self._issue_kubeconfig(request, policy_name):
                    methods.append(method)
            elif method == AUTH_OIDC:
                methods.append(method)
            else:
                logger.warning(f"⚠️  [{request.key}] unknown authentication method {method!r}")
        return methods

    def _issue_kubeconfig(self, request: RoleRequest, policy_name: str) -> bool:
        if self.credentials is None:
            self.recorder.warning(request, events.REASON_CERT_FAILED, "Client certificate generation is not configured")
            return False
        email = request.spec.email
        try:
            cert, key = self.credentials.generate_client_cert(request.namespace, policy_name, email)
        except Exception as e:
            logger.warning(f"⚠️  [{request.key}] client certificate generation failed: {e}")
            self.recorder.warning(request, events.REASON_CERT_FAILED, "Client certificate generation failed")
            return False
        try:
            self.credentials.make_kubeconfig(request.namespace, policy_name, email, cert, key)
        except Exception as e:
            logger.warning(f"⚠️  [{request.key}] kubeconfig creation failed: {e}")
            self.recorder.warning(request, events.REASON_CONFIG_FAILED, "Making kubeconfig failed")
            return False
        return True
