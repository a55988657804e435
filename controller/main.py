import logging
import threading

import kopf

from controller import config
from controller.credentials import KubeCredentialIssuer
from controller.db import AuditStore
from controller.events import EventRecorder
from controller.expiry import ExpiryScheduler
from controller.informer import RoleRequestInformer
from controller.notifier import Notifier, sender_from_env
from controller.rolerequest import RoleRequestController
from controller.store import KubeStore, load_api_client

logger = logging.getLogger(__name__)

SEP = "⚡" * 30


class _HealthzFilter(logging.Filter):
    def filter(self, record):
        return "GET /healthz" not in record.getMessage()


logging.getLogger("aiohttp.access").addFilter(_HealthzFilter())


# ---------------------------------------------------------------------------
# kopf handlers
# ---------------------------------------------------------------------------

@kopf.on.startup()
def startup(memo: kopf.Memo, **kwargs):
    logger.info(SEP)
    logger.info(f"🚀 k8s-tenancy controller starting up (workers={config.WORKERS})")

    api_client = load_api_client()
    store = KubeStore(api_client)

    audit_db = AuditStore()
    audit_db.init()
    try:
        audit_db.purge_old_records(days=30)
    except Exception as e:
        logger.warning(f"⚠️  Startup DB purge failed (non-fatal): {e}")

    notifier = Notifier(sender_from_env())
    informer = RoleRequestInformer(store)
    recorder = EventRecorder(store)
    controller = RoleRequestController(
        store,
        informer,
        notifier,
        credentials=KubeCredentialIssuer(api_client),
        recorder=recorder,
        audit_db=audit_db,
        expiry=ExpiryScheduler(store, audit_db=audit_db, recorder=recorder),
        console_url=config.CONSOLE_URL,
    )
    informer.start()

    stop_event = threading.Event()
    thread = threading.Thread(
        target=controller.run, args=(config.WORKERS, stop_event),
        name="rolerequest-controller", daemon=True,
    )
    thread.start()

    memo.informer = informer
    memo.controller = controller
    memo.notifier = notifier
    memo.stop_event = stop_event
    memo.thread = thread
    logger.info("✅ k8s-tenancy controller ready")


@kopf.on.event(config.CRD_GROUP, config.CRD_VERSION, "rolerequests")
def on_rolerequest_event(event, memo: kopf.Memo, **kwargs):
    """Feed every watch event into the informer cache."""
    informer = memo.get("informer")
    if informer is None:
        return
    informer.handle_event(event.get("type"), event["object"])


@kopf.on.probe(id="queueDepth")
def queue_depth(memo: kopf.Memo, **kwargs):
    controller = memo.get("controller")
    return len(controller.queue) if controller is not None else 0


@kopf.on.probe(id="nextExpiry")
def next_expiry(memo: kopf.Memo, **kwargs):
    controller = memo.get("controller")
    if controller is None or controller.expiry is None or controller.expiry.next_deadline is None:
        return None
    return controller.expiry.next_deadline.isoformat()


@kopf.on.cleanup()
def cleanup(memo: kopf.Memo, **kwargs):
    logger.info("🛑 k8s-tenancy controller shutting down")
    stop_event = memo.get("stop_event")
    if stop_event is not None:
        stop_event.set()
        memo.thread.join(timeout=30)
    notifier = memo.get("notifier")
    if notifier is not None:
        notifier.shutdown(wait=False)


def run():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(name)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    kopf.run(clusterwide=True, liveness_endpoint="http://0.0.0.0:8080/healthz")


if __name__ == "__main__":
    run()
