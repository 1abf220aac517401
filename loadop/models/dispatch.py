"""
Dispatch request model.

One request per target per start/stop action; consumed at most once by a
dispatch worker and never persisted.
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    namespace: str
    url: str
    method: str
    payload: bytes
    test_run_name: str
