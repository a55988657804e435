"""
Fire-and-forget notifications.

Work is submitted to a bounded thread pool and never awaited by the
reconciler; failures land in the log via a done-callback. Messages are
rendered from Jinja2 templates and handed to a sender (SMTP, or the log when
no SMTP host is configured).
"""

import logging
import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from email.message import EmailMessage

from jinja2 import DictLoader, Environment, StrictUndefined

from controller import config

logger = logging.getLogger(__name__)

ROLE_REQUEST_PENDING = "role-request-pending"
ROLE_REQUEST_APPROVED = "role-request-approved"

TEMPLATES = {
    f"{ROLE_REQUEST_PENDING}.subject": "[{{ cluster }}] Role request {{ role_request }} awaits approval in {{ namespace }}",
    f"{ROLE_REQUEST_PENDING}.body": """\
Hello,

{{ name }} <{{ username }}> has requested a role in namespace {{ namespace }}.
Role request: {{ role_request }}

An administrator of the namespace can approve it by setting spec.approved=true.
{% if console_url %}
Console: {{ console_url }}
{% endif %}
""",
    f"{ROLE_REQUEST_APPROVED}.subject": "[{{ cluster }}] Your role request {{ role_request }} has been approved",
    f"{ROLE_REQUEST_APPROVED}.body": """\
Hello {{ name }},

Your role request {{ role_request }} in namespace {{ namespace }} has been approved.
{% if auth_methods %}
You can authenticate with: {{ auth_methods | join(", ") }}.
{% if "client-certificate" in auth_methods %}
Your kubeconfig is stored in namespace {{ namespace }}.
{% endif %}
{% else %}
No authentication method could be provisioned; contact your tenant administrator.
{% endif %}
{% if console_url %}
Console: {{ console_url }}
{% endif %}
""",
}


@dataclass
class NotificationContent:
    namespace: str
    cluster: str
    name: str
    username: str
    role_request: str
    recipients: list[str] = field(default_factory=list)
    auth_methods: list[str] = field(default_factory=list)
    console_url: str = ""

    def as_context(self) -> dict:
        return {
            "namespace": self.namespace,
            "cluster": self.cluster,
            "name": self.name,
            "username": self.username,
            "role_request": self.role_request,
            "recipients": list(self.recipients),
            "auth_methods": list(self.auth_methods),
            "console_url": self.console_url,
        }


class LogSender:
    def send(self, subject: str, recipients: list[str], body: str) -> None:
        logger.info(f"✉️  (log only) to={','.join(recipients)} subject={subject!r}")


@dataclass
class SMTPSender:
    host: str
    port: int
    sender: str
    username: str | None = None
    password: str | None = None
    use_tls: bool = True

    def send(self, subject: str, recipients: list[str], body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)


def sender_from_env():
    if not config.SMTP_HOST:
        logger.warning("⚠️  SMTP_HOST not set — notifications will only be logged")
        return LogSender()
    return SMTPSender(
        host=config.SMTP_HOST,
        port=config.SMTP_PORT,
        sender=config.SMTP_FROM,
        username=config.SMTP_USER or None,
        password=config.SMTP_PASSWORD or None,
        use_tls=config.SMTP_TLS,
    )


class Notifier:
    def __init__(self, sender=None, workers: int = config.NOTIFIER_WORKERS):
        self.sender = sender or LogSender()
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notifier")
        self._env = Environment(loader=DictLoader(TEMPLATES), undefined=StrictUndefined,
                                keep_trailing_newline=True)

    def render(self, kind: str, content: NotificationContent) -> tuple[str, str]:
        ctx = content.as_context()
        subject = self._env.get_template(f"{kind}.subject").render(ctx)
        body = self._env.get_template(f"{kind}.body").render(ctx)
        return subject, body

    def send(self, kind: str, content: NotificationContent) -> None:
        """Render and deliver synchronously. Callers normally want ``dispatch``."""
        if not content.recipients:
            logger.info(f"📭 [{content.namespace}/{content.role_request}] no recipients for {kind}, skipping")
            return
        subject, body = self.render(kind, content)
        self.sender.send(subject, content.recipients, body)
        logger.info(f"📨 [{content.namespace}/{content.role_request}] sent {kind} to {len(content.recipients)} recipient(s)")

    def dispatch(self, kind: str, content: NotificationContent) -> Future:
        return self.submit(self.send, kind, content)

    def submit(self, fn, *args, **kwargs) -> Future:
        """Run ``fn`` on the notifier pool; errors are logged, never raised to the caller."""
        future = self._pool.submit(fn, *args, **kwargs)
        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(f"💥 notification task failed: {type(exc).__name__}: {exc}")
