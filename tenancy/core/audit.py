"""Audit log channel."""

import logging
from typing import Any

from tenancy.core.config import Settings

audit_logger = logging.getLogger("tenancy.audit")


class AuditLog:
    """Writes audit entries for the action types enabled in settings."""

    def __init__(self, settings: Settings, logger: logging.Logger = audit_logger) -> None:
        self._actions = set(settings.audit_actions)
        self._include_resource = settings.audit_include_resource
        self._logger = logger

    def enabled(self, action_type: str) -> bool:
        return action_type in self._actions

    def record(
        self,
        action_type: str,
        message: str,
        context: dict[str, Any],
        resource: Any = None,
    ) -> bool:
        """Log an audit entry. Returns False if the action type is not audited."""
        if not self.enabled(action_type):
            return False
        if self._include_resource and resource is not None:
            context = {**context, "resource": resource}
        self._logger.info("%s %s", message, context, extra={"audit": context})
        return True
