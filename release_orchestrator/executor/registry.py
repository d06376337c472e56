"""
Registry
========
Registry collaborator: pushes every tag of a built image, then confirms via
the Registry HTTP API v2 that the authoritative tag is visible.

Failures here are TRANSIENT (RegistryPushFailure); the Orchestrator retries
the whole push a bounded number of times before failing the run. Daemon
requests are bounded by ``timeout`` (STAGE_TIMEOUT_DOCKER_PUSH by default); a
stalled push stream surfaces as RegistryPushFailure like any other failure.
"""
import logging
import re
from typing import Optional

import docker
import httpx
from docker.errors import APIError, DockerException

from release_orchestrator.core.config import (
    REGISTRY_HOST,
    REGISTRY_TOKEN,
    REGISTRY_USERNAME,
    STAGE_TIMEOUTS,
)
from release_orchestrator.core.errors import RegistryPushFailure
from release_orchestrator.models.image import Image

logger = logging.getLogger(__name__)

_MANIFEST_ACCEPT = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryClient:
    """Minimal Registry v2 API client (manifest lookups only)."""

    def __init__(
        self,
        host: str = REGISTRY_HOST,
        username: str = REGISTRY_USERNAME,
        token: str = REGISTRY_TOKEN,
        timeout: float = 20.0,
    ) -> None:
        self.host = host
        self.username = username
        self.token = token
        self.timeout = timeout

    def _bearer_token(self, client: httpx.Client, challenge: str, repository: str) -> Optional[str]:
        """Exchange credentials for a pull token using the WWW-Authenticate challenge."""
        if not challenge.lower().startswith("bearer"):
            return None
        params = dict(_CHALLENGE_PARAM_RE.findall(challenge))
        realm = params.get("realm")
        if not realm:
            return None
        query = {"scope": params.get("scope", f"repository:{repository}:pull")}
        if params.get("service"):
            query["service"] = params["service"]
        auth = (self.username or "token", self.token) if self.token else None
        response = client.get(realm, params=query, auth=auth)
        response.raise_for_status()
        data = response.json()
        return data.get("token") or data.get("access_token")

    def manifest_exists(self, repository: str, tag: str) -> bool:
        """
        HEAD the manifest of ``repository:tag``.

        Returns False on 404; raises httpx.HTTPError on other failures.
        """
        url = f"https://{self.host}/v2/{repository}/manifests/{tag}"
        headers = {"Accept": _MANIFEST_ACCEPT, "User-Agent": "release-orchestrator"}

        with httpx.Client(headers=headers, timeout=self.timeout) as client:
            response = client.head(url)
            if response.status_code == 401:
                token = self._bearer_token(client, response.headers.get("www-authenticate", ""), repository)
                if token:
                    response = client.head(url, headers={"Authorization": f"Bearer {token}"})
            if response.status_code == 404:
                return False
            response.raise_for_status()
            return True


class DockerRegistry:
    """Pushes images with the local Docker daemon."""

    def __init__(
        self,
        username: str = REGISTRY_USERNAME,
        token: str = REGISTRY_TOKEN,
        client=None,
        registry_client: Optional[RegistryClient] = None,
        verify: bool = True,
        timeout: Optional[float] = STAGE_TIMEOUTS["docker_push_auto"],
    ) -> None:
        self.username = username
        self.token = token
        self._client = client
        self.registry_client = registry_client
        self.verify = verify
        self.timeout = timeout

    @property
    def client(self):
        if self._client is None:
            # bounds every daemon request, including stalls in the push stream
            if self.timeout:
                self._client = docker.from_env(timeout=max(1, int(self.timeout)))
            else:
                self._client = docker.from_env()
        return self._client

    def _auth_config(self) -> Optional[dict]:
        if not self.token:
            return None
        return {"username": self.username or "token", "password": self.token}

    def push(self, image: Image) -> str:
        """
        Push every tag of ``image``. Returns the registry digest of the
        authoritative tag (falls back to the local id if none was reported).

        Raises
        ------
        RegistryPushFailure
            Stream error, daemon error, or tag not visible afterwards.
        """
        digest = ""
        for tag in image.all_tags:
            logger.info("Pushing %s:%s", image.name, tag)
            try:
                stream = self.client.images.push(
                    image.name,
                    tag=tag,
                    auth_config=self._auth_config(),
                    stream=True,
                    decode=True,
                )
                for line in stream:
                    if not isinstance(line, dict):
                        continue
                    if line.get("error"):
                        raise RegistryPushFailure(f"Push of {image.name}:{tag} failed: {line['error']}")
                    aux = line.get("aux") or {}
                    if tag == image.tag and aux.get("Digest"):
                        digest = aux["Digest"]
            except APIError as e:
                raise RegistryPushFailure(f"Docker API error pushing {image.name}:{tag}: {e}") from e
            except (DockerException, httpx.HTTPError, OSError) as e:
                # OSError covers socket and HTTP read timeouts from the daemon connection
                raise RegistryPushFailure(f"Could not reach registry for {image.name}:{tag}: {e}") from e

        if self.verify:
            registry_client = self.registry_client or RegistryClient(
                host=image.registry, username=self.username, token=self.token
            )
            try:
                visible = registry_client.manifest_exists(image.repository, image.tag)
            except httpx.HTTPError as e:
                raise RegistryPushFailure(f"Could not verify {image.reference}: {e}") from e
            if not visible:
                raise RegistryPushFailure(f"{image.reference} not visible in registry after push")

        logger.info("Pushed %s (%s)", image.reference, (digest or image.digest)[:19])
        return digest or image.digest
