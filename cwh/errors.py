"""Errors that reject a single admission request.

None of these are fatal to the server. The webhook converts them into a
rejecting admission response and the API server surfaces the `message` (and
for validation errors, the individual field causes) to the user.

"""

from typing import List

from cwh.models import FieldError


class AdmissionError(Exception):
    """Base class for all errors that reject a request."""

    def __init__(self, message: str, causes: List[FieldError] | None = None):
        super().__init__(message)
        self.message = message
        self.causes: List[FieldError] = list(causes or [])


class DecodeError(AdmissionError):
    """The admission review or one of its manifests is malformed."""


class ValidationError(AdmissionError):
    """The manifest violates one or more field rules."""


class ProvisioningError(AdmissionError):
    """Could not look up or create the default RBAC resources."""


class SerializationError(AdmissionError):
    """Could not serialise a manifest to compute the JSON patch."""
