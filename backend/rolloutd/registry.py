"""
Container registry integration - resolves image tags to immutable content digests
through the Docker Registry HTTP API v2. Only manifests are read; layers are pulled
by the host container runtime.
"""

import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .errors import NotFoundError, TransientError

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])


def is_digest(value: str) -> bool:
    return bool(value) and bool(DIGEST_RE.match(value))


@dataclass(frozen=True)
class ImageReference:
    registry: Optional[str]
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        """Tag or digest usable in a manifest URL."""
        return self.digest or self.tag


def parse_image_reference(image: str) -> ImageReference:
    """
    Split ``[registry/]repository[:tag][@digest]``.

    The first path component is a registry host when it contains a dot or a
    port, or is ``localhost``.
    """
    if not image or image.strip() != image:
        raise NotFoundError(f"invalid image reference: {image!r}")
    digest = None
    if "@" in image:
        image, digest = image.split("@", 1)
        if not is_digest(digest):
            raise NotFoundError(f"invalid digest in image reference: {digest!r}")
    tag = "latest"
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        image, tag = image.rsplit(":", 1)
    registry = None
    parts = image.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, image = parts
    if not image:
        raise NotFoundError("image reference has an empty repository")
    return ImageReference(registry=registry, repository=image, tag=tag, digest=digest)


def _parse_challenge(header: str) -> Dict[str, str]:
    return dict(re.findall(r'(\w+)="([^"]*)"', header))


class RegistryClient:
    """Minimal Registry v2 client: manifest digests with bearer token auth."""

    def __init__(self, base_url: str = f"https://{DOCKER_HUB}", username: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = session or requests.Session()
        self._tokens: Dict[str, str] = {}

    def _split(self, repository: str) -> Tuple[str, str]:
        ref = parse_image_reference(repository)
        base = f"https://{ref.registry}" if ref.registry else self.base_url
        path = ref.repository
        if DOCKER_HUB in base and "/" not in path:
            path = f"library/{path}"
        return base, path

    def fetch_digest(self, repository: str, tag: str) -> str:
        """
        Resolve a tag to the digest of its manifest.

        Args:
            repository: Repository path, optionally prefixed with a registry host
            tag: Tag name

        Returns:
            Content digest such as ``sha256:...``
        """
        base, path = self._split(repository)
        url = f"{base}/v2/{path}/manifests/{tag}"
        scope = f"repository:{path}:pull"

        response = self._request("HEAD", url, scope)
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            # Some registries omit the header on HEAD
            response = self._request("GET", url, scope)
            digest = response.headers.get("Docker-Content-Digest") or \
                "sha256:" + hashlib.sha256(response.content).hexdigest()
        logger.debug(f"Resolved {repository}:{tag} -> {digest}")
        return digest

    def _request(self, method: str, url: str, scope: str) -> requests.Response:
        headers = {"Accept": MANIFEST_ACCEPT}
        token = self._tokens.get(scope)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        response = self._send(method, url, headers)

        if response.status_code == 401:
            challenge = response.headers.get("WWW-Authenticate", "")
            if challenge.lower().startswith("bearer"):
                token = self._fetch_token(_parse_challenge(challenge), scope)
                headers["Authorization"] = f"Bearer {token}"
                response = self._send(method, url, headers)

        self._raise_for_status(response, url)
        return response

    def _send(self, method: str, url: str, headers: Dict[str, str], **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"registry unreachable for {url}: {e}") from e

    def _fetch_token(self, challenge: Dict[str, str], scope: str) -> str:
        realm = challenge.get("realm")
        if not realm:
            raise NotFoundError("registry sent a bearer challenge without a realm")
        params = {"service": challenge.get("service", ""), "scope": challenge.get("scope", scope)}
        auth = (self.username, self.password) if self.username and self.password else None
        try:
            response = self.session.get(realm, params=params, auth=auth, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientError(f"token endpoint unreachable: {e}") from e
        self._raise_for_status(response, realm)
        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(f"token endpoint {realm} returned a malformed body: {e}") from e
        token = data.get("token") or data.get("access_token")
        if not token:
            raise NotFoundError(f"token endpoint {realm} returned no token")
        self._tokens[scope] = token
        return token

    @staticmethod
    def _raise_for_status(response: requests.Response, url: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429 or status >= 500:
            raise TransientError(f"registry returned {status} for {url}")
        if status == 404:
            raise NotFoundError(f"not found: {url}")
        raise NotFoundError(f"registry refused {url} with {status}")


class ImageResolver:
    """
    Resolves (repository, tag) to a digest with a TTL cache and retries.

    TransientError is retried with exponential backoff; NotFoundError is raised
    immediately. Successful lookups are cached for ``ttl`` seconds so bursty
    triggers do not hammer the registry.
    """

    def __init__(self, lookup: Callable[[str, str], str], ttl: float = 30.0, max_attempts: int = 5,
                 initial_backoff: float = 0.5, max_backoff: float = 8.0,
                 clock: Callable[[], float] = time.monotonic):
        self._lookup = lookup
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}

    @classmethod
    def from_settings(cls, settings) -> "ImageResolver":
        client = RegistryClient(
            base_url=settings.REGISTRY_URL,
            username=settings.REGISTRY_USERNAME,
            password=settings.REGISTRY_PASSWORD,
            timeout=settings.REQUEST_TIMEOUT_SECS,
        )
        return cls(
            client.fetch_digest,
            ttl=settings.RESOLVER_CACHE_TTL_SECS,
            max_attempts=settings.RESOLVER_MAX_ATTEMPTS,
            initial_backoff=settings.RESOLVER_INITIAL_BACKOFF_SECS,
            max_backoff=settings.RESOLVER_MAX_BACKOFF_SECS,
        )

    def resolve(self, repository: str, tag: str) -> str:
        if is_digest(tag):
            return tag
        key = (repository, tag)
        with self._lock:
            cached = self._cached(key)
            if cached:
                return cached
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        # concurrent misses for one key share a single registry lookup
        with key_lock:
            with self._lock:
                cached = self._cached(key)
            if cached:
                return cached
            digest = self._lookup_with_retry(repository, tag)
            with self._lock:
                self._cache[key] = (digest, self._clock() + self.ttl)
        return digest

    def _cached(self, key: Tuple[str, str]) -> Optional[str]:
        entry = self._cache.get(key)
        if entry and entry[1] > self._clock():
            return entry[0]
        return None

    def invalidate(self, repository: Optional[str] = None, tag: Optional[str] = None) -> None:
        with self._lock:
            if repository is None:
                self._cache.clear()
                return
            for key in list(self._cache):
                if key[0] == repository and (tag is None or key[1] == tag):
                    del self._cache[key]

    def _lookup_with_retry(self, repository: str, tag: str) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._lookup(repository, tag)
        raise RuntimeError("Retrying loop exited unexpectedly")
