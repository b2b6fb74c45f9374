"""
Poll job error taxonomy.

UpstreamUnavailable  - an external source failed or returned nothing usable (502)
Unauthorized         - bad bearer token on a cron trigger (401)
InternalError        - unexpected failure while processing (500)

Partial fetches are not errors: they travel as a list of messages in the
job result under "fetchErrors".
"""

from typing import Dict, Optional


class PollJobError(Exception):
    """Base error for poll jobs. Carries the stage timings measured so far."""

    kind = "internal_error"
    status = 500

    def __init__(self, message: str, timings: Optional[Dict[str, int]] = None):
        super().__init__(message)
        self.message = message
        self.timings = dict(timings or {})

    def to_payload(self, timestamp: int) -> Dict:
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "timestamp": timestamp,
            "timings": self.timings,
        }


class UpstreamUnavailable(PollJobError):
    kind = "upstream_unavailable"
    status = 502


class Unauthorized(PollJobError):
    kind = "unauthorized"
    status = 401


class InternalError(PollJobError):
    kind = "internal_error"
    status = 500
