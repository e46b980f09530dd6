"""Source artifact download."""

import hashlib
import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from cluster.store import SourceArtifact

logger = logging.getLogger(__name__)


class ArtifactFetchError(Exception):
    """Artifact could not be downloaded or failed verification."""


def verify_digest(data: bytes, digest: str) -> None:
    """Check data against an `algo:hex` digest. Empty digest skips the check."""
    if not digest:
        return
    algo, _, expected = digest.partition(':')
    if not expected:
        raise ArtifactFetchError(f"invalid digest '{digest}'")
    try:
        actual = hashlib.new(algo, data).hexdigest()
    except ValueError as e:
        raise ArtifactFetchError(f"unsupported digest algorithm '{algo}'") from e
    if actual != expected:
        raise ArtifactFetchError(f"failed to verify artifact: computed digest doesn't match '{digest}'")


class ArtifactFetcher:
    """Downloads artifact tarballs with retries on transient HTTP failures."""

    def __init__(self, retries: int = 10, timeout: float = 60.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        if session is None:
            retry = Retry(
                total=retries,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=('GET',),
            )
            adapter = HTTPAdapter(max_retries=retry)
            self.session.mount('http://', adapter)
            self.session.mount('https://', adapter)

    def fetch(self, artifact: SourceArtifact) -> bytes:
        """Return the artifact bytes, verified against its digest."""
        if artifact.content is not None:
            data = artifact.content
        else:
            if not artifact.url:
                raise ArtifactFetchError(f"artifact for revision {artifact.revision} has no URL")
            logger.debug(f"Downloading {artifact.url}")
            try:
                response = self.session.get(artifact.url, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                raise ArtifactFetchError(f"failed to download artifact from {artifact.url}: {e}") from e
            if response.status_code != 200:
                raise ArtifactFetchError(
                    f"failed to download artifact from {artifact.url}, status: {response.status_code}"
                )
            data = response.content
        verify_digest(data, artifact.digest)
        return data
