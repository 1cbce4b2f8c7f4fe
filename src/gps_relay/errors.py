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
"""Exceptions raised by the relay pipeline."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DeliveryReport


class GpsRelayError(Exception):
    """Base class for all relay errors."""


class TransformationError(GpsRelayError):
    """Raised when valid input produced no destination records."""


class DeliveryError(GpsRelayError):
    """Raised when at least one record could not be delivered."""

    def __init__(self, message: str, report: "DeliveryReport") -> None:
        super().__init__(message)
        self.report = report


class InvalidTransitionError(GpsRelayError):
    """Raised on an illegal transmission status change."""


class RegistryError(GpsRelayError):
    """Raised when the entity registry is inconsistent or an entity is unknown."""
