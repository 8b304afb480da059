"""
Outbound auth notifications (verification and password reset emails).

Auth flows never talk to the email gateway directly. They enqueue a job on
a Valkey list and return; NotificationWorker drains the list and hands each
job to EmailGatewayClient. Delivery errors are logged by the worker and
never reach the flow that queued the job, and failed jobs are not retried.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import urlencode
from uuid import UUID, uuid4

from clients.email_client import EmailGatewayClient, EmailGatewayError
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc, parse_iso

logger = logging.getLogger(__name__)

QUEUE_KEY = "notifications:auth"


class NotificationTemplate(str, Enum):
    """Gateway template names."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


_LINK_PATHS = {
    NotificationTemplate.EMAIL_VERIFICATION: "/verify-email",
    NotificationTemplate.PASSWORD_RESET: "/reset-password",
}


@dataclass(frozen=True, kw_only=True)
class NotificationJob:
    """One queued email."""

    template: NotificationTemplate
    user_id: UUID
    email: str
    nickname: str | None
    link: str
    job_id: str = field(default_factory=lambda: str(uuid4()))
    queued_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["template"] = self.template.value
        data["user_id"] = str(self.user_id)
        data["queued_at"] = self.queued_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationJob":
        """
        Raises:
            ValueError: If a field is missing or malformed
        """
        try:
            return cls(
                template=NotificationTemplate(data["template"]),
                user_id=UUID(data["user_id"]),
                email=data["email"],
                nickname=data.get("nickname"),
                link=data["link"],
                job_id=data["job_id"],
                queued_at=parse_iso(data["queued_at"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed notification job: {e}")


class NotificationSink:
    """Enqueues notification jobs. Used by AuthService."""

    def __init__(self, valkey: ValkeyClient, app_base_url: str):
        self._valkey = valkey
        self._app_base_url = app_base_url.rstrip("/")

    def build_link(self, template: NotificationTemplate, token: str) -> str:
        return f"{self._app_base_url}{_LINK_PATHS[template]}?{urlencode({'token': token})}"

    def enqueue(
        self,
        template: NotificationTemplate,
        user_id: UUID,
        email: str,
        nickname: str | None,
        token: str,
    ) -> NotificationJob:
        job = NotificationJob(
            template=template,
            user_id=user_id,
            email=email,
            nickname=nickname,
            link=self.build_link(template, token),
        )
        self._valkey.push_json(QUEUE_KEY, job.to_dict())
        logger.info(f"Queued {template.value} notification {job.job_id} for user {user_id}")
        return job


class NotificationWorker:
    """
    Drains the notification queue into the email gateway.

    Run from a scheduler or a loop in a separate process. Each job is
    attempted once.
    """

    def __init__(self, valkey: ValkeyClient, email_client: EmailGatewayClient, app_name: str):
        self._valkey = valkey
        self._email_client = email_client
        self._app_name = app_name

    def run_once(self, max_jobs: int = 100) -> int:
        """
        Deliver up to max_jobs queued notifications.

        Returns:
            Number of jobs delivered successfully
        """
        delivered = 0
        for _ in range(max_jobs):
            try:
                raw = self._valkey.pop_json(QUEUE_KEY)
            except ValueError as e:
                logger.error(f"Dropping unreadable notification entry: {e}")
                continue
            if raw is None:
                break

            try:
                job = NotificationJob.from_dict(raw)
            except ValueError as e:
                logger.error(f"Dropping notification entry: {e}")
                continue

            if self._deliver(job):
                delivered += 1
        return delivered

    def _deliver(self, job: NotificationJob) -> bool:
        try:
            self._email_client.send_template(
                template=job.template.value,
                email=job.email,
                nickname=job.nickname,
                link=job.link,
                app_name=self._app_name,
            )
        except EmailGatewayError:
            logger.exception(
                f"Notification {job.job_id} ({job.template.value}) for user {job.user_id} failed"
            )
            return False
        return True
