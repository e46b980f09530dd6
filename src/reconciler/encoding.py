"""Plan payload encoding.

Plans are stored raw unless the object carrying them has an `encoding`
annotation. `gzip` is the only supported value; anything else is an
error in both directions. Saved plan secrets carry the annotation
themselves.
"""

import gzip
from typing import Optional

from api.types import ENCODING_ANNOTATION, ManagedResource
from reconciler.errors import PlanEncodingError

GZIP = 'gzip'
PLAN_SECRET_KEY = 'tfplan'


def _encoding_of(annotations: Optional[dict]) -> Optional[str]:
    return (annotations or {}).get(ENCODING_ANNOTATION)


def encode_plan(annotations: Optional[dict], payload: bytes) -> bytes:
    encoding = _encoding_of(annotations)
    if encoding is None:
        return payload
    if encoding == GZIP:
        return gzip.compress(payload)
    raise PlanEncodingError(f'"{encoding}" encoding method is not valid or supported')


def decode_plan(annotations: Optional[dict], payload: bytes) -> bytes:
    encoding = _encoding_of(annotations)
    if encoding is None:
        return payload
    if encoding == GZIP:
        try:
            return gzip.decompress(payload)
        except (OSError, EOFError) as e:
            raise PlanEncodingError(f"cannot decode gzip plan: {e}") from e
    raise PlanEncodingError(f'"{encoding}" encoding method is not valid or supported')


def plan_secret_name(resource: ManagedResource) -> str:
    """Name of the secret holding the saved plan for this resource."""
    return f'tfplan-{resource.workspace_name}-{resource.name}'
