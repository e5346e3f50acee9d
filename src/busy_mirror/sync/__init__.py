"""
BusyMirror: thin orchestrator that delegates to sync submodules.
"""

import logging
from datetime import datetime

from busy_mirror.models import ErrorKind
from busy_mirror.models import MirrorConfig
from busy_mirror.models import NotificationError
from busy_mirror.models import RunReport
from busy_mirror.models import SyncIssue
from busy_mirror.sync.reconcile import reconcile


class BusyMirror:
    """Main synchronization engine."""

    def __init__(self, config: MirrorConfig, service=None, notifier=None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.service = service
        self.notifier = notifier

    def _default_service(self):
        from busy_mirror.eds_client import EDSCalendarService

        self.logger.info("Connecting to Evolution Data Server...")
        return EDSCalendarService()

    def _default_notifier(self):
        if self.config.smtp is None:
            return None
        from busy_mirror.notify import EmailNotifier

        return EmailNotifier(self.config.smtp)

    def run(self, now: datetime | None = None) -> RunReport:
        """Execute one mirror run over every configured destination."""
        service = self.service or self._default_service()
        notifier = self.notifier or self._default_notifier()

        results = reconcile(
            self.config.destinations,
            self.config.look_ahead_days,
            service,
            account_email=self.config.account_email,
            now=now,
            dry_run=self.config.dry_run,
        )

        for destination, result in zip(self.config.destinations, results):
            if not destination.notify_emails or self.config.dry_run:
                continue
            if not (result.created or result.deleted or result.issues):
                continue
            if notifier is None:
                self.logger.warning(
                    f"{destination.id}: notify_emails set but no smtp_host configured"
                )
                continue
            try:
                notifier.notify(destination.id, result, destination.notify_emails)
            except NotificationError as e:
                self.logger.error(f"Notification failed: {e}")
                result.issues.append(SyncIssue(ErrorKind.NOTIFICATION, destination.id, str(e)))

        return RunReport(results)
