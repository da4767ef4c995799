from typing import Callable, List, Optional

import httpx

from .logger_setup import logger
from .models import Build


class Notifier:
    """Tells subscribers about a build once it has reached a terminal state."""

    def __init__(self, webhook_urls: Optional[List[str]] = None, http_client: Optional[httpx.Client] = None):
        self.subscribers: List[Callable[[dict], None]] = []
        self.webhook_urls = list(webhook_urls or [])
        self._http_client = http_client
        self.logger = logger

    def subscribe(self, callback: Callable[[dict], None]):
        self.subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[dict], None]):
        if callback in self.subscribers:
            self.subscribers.remove(callback)

    @staticmethod
    def build_signal(build: Build) -> dict:
        return {
            "build_id": build.id,
            "revision": build.revision,
            "status": build.status.value,
            "error_kind": build.error_kind,
            "stage_log": [s.to_dict() for s in build.stage_log],
        }

    def notify(self, build: Build):
        signal = self.build_signal(build)
        for callback in list(self.subscribers):
            try:
                callback(signal)
            except Exception as e:
                self.logger.error(f"Build notification subscriber {callback!r} failed for {build.id}: {e}", exc_info=True)
        for url in self.webhook_urls:
            self._post_webhook(url, signal)

    def _post_webhook(self, url: str, signal: dict):
        try:
            if self._http_client is not None:
                response = self._http_client.post(url, json=signal)
            else:
                timeout_config = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)
                with httpx.Client(timeout=timeout_config) as client:
                    response = client.post(url, json=signal)
            response.raise_for_status()
            self.logger.debug(f"Notified {url} about build {signal['build_id']} ({signal['status']})")
        except httpx.HTTPError as e:
            self.logger.warning(f"Notification webhook {url} failed for build {signal['build_id']}: {e}")
