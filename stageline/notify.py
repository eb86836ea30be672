"""Failure notification sinks."""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, List, Optional, Sequence

from .errors import NotificationError
from .models import NotificationPayload

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, payload: NotificationPayload) -> None:
        """Deliver the payload or raise NotificationError."""


class LogNotifier(NotificationSink):
    """Writes failures to the application log."""

    def __init__(self, level: int = logging.ERROR) -> None:
        self.level = level

    def notify(self, payload: NotificationPayload) -> None:
        logger.log(
            self.level,
            "%s finished with %s (failed stages: %s); console: %s",
            payload.run_id,
            payload.status.value.upper(),
            ", ".join(payload.failed_stages) or "-",
            payload.console_url,
        )


class EmailNotifier(NotificationSink):
    """Sends a plain-text failure mail over SMTP."""

    def __init__(
        self,
        *,
        to_addrs: Sequence[str],
        from_addr: str,
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        use_tls: bool = False,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout_s: float = 30.0,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        if not to_addrs:
            raise ValueError("EmailNotifier needs at least one recipient")
        self.to_addrs = list(to_addrs)
        self.from_addr = from_addr
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.timeout_s = timeout_s
        self._smtp_factory = smtp_factory

    def build_message(self, payload: NotificationPayload) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.from_addr
        msg["To"] = ", ".join(self.to_addrs)
        msg["Subject"] = payload.subject
        msg.attach(MIMEText(self._format_body(payload), "plain", "utf-8"))
        return msg

    def _format_body(self, payload: NotificationPayload) -> str:
        lines = [
            f"Pipeline: {payload.pipeline}",
            f"Run: {payload.run_id}",
            f"Status: {payload.status.value.upper()}",
        ]
        if payload.failed_stages:
            lines.append(f"Failed stages: {', '.join(payload.failed_stages)}")
        if payload.message:
            lines.append(f"Reason: {payload.message}")
        lines.append("")
        lines.append(f"Console output: {payload.console_url}")
        return "\n".join(lines) + "\n"

    def notify(self, payload: NotificationPayload) -> None:
        msg = self.build_message(payload)
        try:
            with self._smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout_s) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Could not mail {payload.run_id} to {msg['To']}: {exc}") from exc
        logger.info("Failure mail for %s sent to %d recipient(s)", payload.run_id, len(self.to_addrs))


class CompositeNotifier(NotificationSink):
    """Fans a payload out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    def notify(self, payload: NotificationPayload) -> None:
        errors: List[str] = []
        for sink in self.sinks:
            try:
                sink.notify(payload)
            except NotificationError as exc:
                errors.append(str(exc))
            except Exception as exc:
                logger.exception("Notification sink %s raised", type(sink).__name__)
                errors.append(f"{type(sink).__name__}: {exc}")
        if errors:
            raise NotificationError("; ".join(errors))
