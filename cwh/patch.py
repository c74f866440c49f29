import json
import logging

import jsonpatch
from pydantic import BaseModel
from pydantic_core import PydanticSerializationError

from cwh.errors import SerializationError

# Convenience.
logit = logging.getLogger("app")

# What `create_json_patch` returns for two identical manifests.
EMPTY_PATCH = b"[]"


def to_manifest(obj: BaseModel | dict) -> dict:
    """Return the plain JSON compatible manifest of `obj`.

    Fields that still have their default value are dropped. This mirrors the
    `omitempty` serialisation of the API server and ensures that `before` and
    `after` are always serialised the same way.

    """
    if isinstance(obj, dict):
        # Round trip through JSON to reject anything JSON cannot represent.
        return json.loads(json.dumps(obj))
    return obj.model_dump(mode="json", exclude_defaults=True)


def create_json_patch(before: BaseModel | dict, after: BaseModel | dict) -> bytes:
    """Return the JSON patch (RFC 6902) that transforms `before` into `after`.

    Raise `SerializationError` if either object cannot be serialised.

    """
    try:
        src, dst = to_manifest(before), to_manifest(after)
        patch = jsonpatch.make_patch(src, dst)
        out = json.dumps(patch.patch).encode()
    except (PydanticSerializationError, TypeError, ValueError) as err:
        logit.error("cannot compute JSON patch", {"reason": str(err)})
        raise SerializationError(f"cannot compute JSON patch: {err}")
    return out
