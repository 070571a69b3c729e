"""
auth/notifications.py -- Out-of-band delivery of codes and account notices.

Template rendering and SMTP transport live outside this package. AuthService
talks to a Notifier; deployments plug in their own, tests use a recorder.
LoggingNotifier is the default: it records THAT a message went out, never the
code or token itself.

Delivery failures are logged and reported as False. A lost email must not
roll back a registration or a reset request -- the user can ask again.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("authcore.auth.notifications")


class Notifier(Protocol):
    def send_verification_code(self, email: str, code: str) -> bool: ...

    def send_password_reset(self, email: str, token: str) -> bool: ...

    def send_welcome(self, email: str, name: str) -> bool: ...


class LoggingNotifier:
    """Notifier that only logs. Suitable for development and as a fallback."""

    def send_verification_code(self, email: str, code: str) -> bool:
        logger.info("Verification code issued for %s", email)
        return True

    def send_password_reset(self, email: str, token: str) -> bool:
        logger.info("Password reset token issued for %s", email)
        return True

    def send_welcome(self, email: str, name: str) -> bool:
        logger.info("Welcome notice queued for %s", email)
        return True
