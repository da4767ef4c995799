from typing import Optional, Tuple

from .errors import TriggerRejected
from .logger_setup import logger
from .models import Build, PushNotification

REF_PREFIX = "refs/heads/"


def parse_push_payload(payload) -> PushNotification:
    """Accepts the flat `{repositoryId, revision, ref}` form or a GitHub/Gitea push body."""
    if not isinstance(payload, dict):
        raise TriggerRejected("Push payload must be a JSON object")

    if "revision" in payload or "repositoryId" in payload:
        repository_id = payload.get("repositoryId")
        revision = payload.get("revision")
    else:
        repo = payload.get("repository") or {}
        repository_id = (repo.get("full_name") or repo.get("id")) if isinstance(repo, dict) else None
        revision = payload.get("after")
    ref = payload.get("ref")

    missing = [name for name, value in (("repositoryId", repository_id), ("revision", revision), ("ref", ref))
               if value in (None, "")]
    if missing:
        raise TriggerRejected(f"Push payload is missing {', '.join(missing)}")
    return PushNotification(repository_id=str(repository_id), revision=str(revision), ref=str(ref))


class TriggerListener:
    """Filters push notifications and turns the accepted ones into queued builds."""

    def __init__(self, orchestrator, branch: str, repository_id: Optional[str] = None):
        self.orchestrator = orchestrator
        self.branch = branch[len(REF_PREFIX):] if branch.startswith(REF_PREFIX) else branch
        self.repository_id = repository_id
        self.logger = logger

    def matches_branch(self, ref: str) -> bool:
        return ref == self.branch or ref == REF_PREFIX + self.branch

    def receive(self, notification: PushNotification, triggered_by: str = "webhook") -> Tuple[Build, bool]:
        """Returns (build, created). `created` is False when coalesced into an active build."""
        if not self.matches_branch(notification.ref):
            self.logger.info(f"Rejected push for ref '{notification.ref}' (configured branch: {self.branch})")
            raise TriggerRejected(f"Ref '{notification.ref}' does not match configured branch '{self.branch}'")
        if self.repository_id and notification.repository_id != self.repository_id:
            self.logger.info(f"Rejected push from repository '{notification.repository_id}'")
            raise TriggerRejected(
                f"Repository '{notification.repository_id}' is not the configured repository '{self.repository_id}'"
            )

        with self.orchestrator.lock:
            active = self.orchestrator.active_build_for_revision(notification.revision)
            if active is not None:
                self.logger.info(
                    f"Coalesced push for revision {notification.revision} into build {active.id} ({active.status.value})"
                )
                return active, False
            build = self.orchestrator.enqueue(
                notification.revision,
                repository_id=notification.repository_id,
                ref=notification.ref,
                triggered_by=triggered_by,
            )
        return build, True

    def receive_payload(self, payload, triggered_by: str = "webhook") -> Tuple[Build, bool]:
        return self.receive(parse_push_payload(payload), triggered_by=triggered_by)
