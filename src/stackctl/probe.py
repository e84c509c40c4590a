"""Cheap reachability and health checks against a single instance."""
from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests

LOGGER = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"
RUNNING_STATUS = "running"


@dataclass(frozen=True, slots=True)
class ProbeProfile:
    """Timeouts and retry budget applied to every probe call.

    ``skip_health`` marks the bulk-listing profile: callers only test TCP
    reachability and do not issue HTTP health requests.
    """

    name: str
    connect_timeout: float
    request_timeout: float
    retries: int
    retry_delay: float
    health_path: str = "/system/action/health"
    skip_health: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "connect_timeout": self.connect_timeout,
            "request_timeout": self.request_timeout,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
        }


FAST_PROFILE = ProbeProfile(
    name="fast",
    connect_timeout=1.0,
    request_timeout=1.0,
    retries=2,
    retry_delay=1.0,
    skip_health=True,
)
PATIENT_PROFILE = ProbeProfile(
    name="patient",
    connect_timeout=5.0,
    request_timeout=60.0,
    retries=5,
    retry_delay=1.0,
)


class Probe:
    """Probe an instance's local port.

    Neither method raises for network failures; a failed probe is a negative
    result. Each health check opens its own session, so one probe can serve
    concurrent listing workers.
    """

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = requests.Session,
        host: str = LOCALHOST,
    ) -> None:
        """Store the factory for the HTTP sessions used by health requests."""
        self._session_factory = session_factory
        self._host = host

    def reachable(self, port: int, profile: ProbeProfile) -> bool:
        """Return ``True`` when a TCP connection to *port* succeeds."""
        try:
            with socket.create_connection((self._host, port), timeout=profile.connect_timeout):
                return True
        except OSError:
            return False

    def healthy(self, port: int, profile: ProbeProfile) -> bool:
        """Return ``True`` when the health endpoint reports the running status."""
        url = f"http://{self._host}:{port}{profile.health_path}"
        attempts = 1 + max(0, profile.retries)
        with self._session_factory() as session:
            return self._poll_health(session, url, profile, attempts)

    def _poll_health(
        self, session: requests.Session, url: str, profile: ProbeProfile, attempts: int
    ) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                resp = session.get(url, timeout=profile.request_timeout)
                payload = resp.json()
            except (requests.RequestException, ValueError) as exc:
                LOGGER.debug(
                    "Health probe %s failed (attempt %d/%d): %s", url, attempt, attempts, exc
                )
            else:
                if isinstance(payload, dict):
                    return payload.get("status") == RUNNING_STATUS
                return False
            if attempt < attempts and profile.retry_delay > 0:
                time.sleep(profile.retry_delay)
        return False


__all__ = ["FAST_PROFILE", "PATIENT_PROFILE", "Probe", "ProbeProfile"]
