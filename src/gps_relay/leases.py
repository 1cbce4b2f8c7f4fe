# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Per-entity leases that keep two runs for one entity from overlapping."""

import threading
import time
import uuid
from collections.abc import Callable


class LeaseManager:
    """In-process mutual exclusion keyed by entity id.

    A lease that outlives its TTL is considered abandoned and may be taken
    over by the next caller.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self.clock = clock
        self._leases: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str) -> str | None:
        """Take the lease for `key` and return its token, or None if it is held."""
        now = self.clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return None
            token = uuid.uuid4().hex
            self._leases[key] = (token, now + self.ttl)
            return token

    def release(self, key: str, token: str) -> bool:
        """Release `key` if `token` still owns it."""
        with self._lock:
            current = self._leases.get(key)
            if current is None or current[0] != token:
                return False
            del self._leases[key]
            return True

    def is_held(self, key: str) -> bool:
        with self._lock:
            current = self._leases.get(key)
            return current is not None and current[1] > self.clock()
