"""
Image Builder
=============
Container image collaborator: turns a workspace (with the build artifact
unpacked into it) into a tagged local image.

Tagging (mirrors the registry metadata rules):
    - sha-<full revision>      always, authoritative
    - <branch>                 push events only
    - latest                   push events only

Labels follow the OCI annotation keys so the image can be traced back to
its source revision.
"""
import logging
import re

import docker
from docker.errors import APIError, BuildError

from release_orchestrator.core.config import REGISTRY_HOST
from release_orchestrator.core.constants import LATEST_TAG
from release_orchestrator.core.errors import BuildFailure
from release_orchestrator.models.image import Image, image_tag_for
from release_orchestrator.models.trigger import TriggerEvent

logger = logging.getLogger(__name__)

_TAG_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _branch_tag(branch: str) -> str:
    # Docker tags: [A-Za-z0-9_.-], max 128 chars, no leading '.' or '-'
    tag = _TAG_INVALID_CHARS.sub("-", branch).lstrip(".-")
    return tag[:128]


def plan_image(trigger: TriggerEvent, registry_host: str = REGISTRY_HOST) -> Image:
    """
    Describe the image a run will build (nothing is built yet).

    The repository path is the lowercased owner/name, since registries
    reject upper-case repository names.
    """
    repository = trigger.repository.lower()
    extra_tags = []
    if trigger.event == "push":
        branch_tag = _branch_tag(trigger.branch)
        if branch_tag:
            extra_tags.append(branch_tag)
        extra_tags.append(LATEST_TAG)

    labels = {
        "org.opencontainers.image.revision": trigger.revision,
        "org.opencontainers.image.source": f"https://github.com/{trigger.repository}",
        "org.opencontainers.image.title": repository.rsplit("/", 1)[-1],
    }
    return Image(
        registry=registry_host,
        repository=repository,
        tag=image_tag_for(trigger.revision),
        extra_tags=extra_tags,
        labels=labels,
    )


class DockerImageBuilder:
    """Builds images with the local Docker daemon."""

    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def build(self, workspace_path: str, image: Image, dockerfile: str = "Dockerfile") -> Image:
        """
        Build ``image`` from the workspace context and apply every tag.

        Returns the same Image with ``digest`` set to the local image id.

        Raises
        ------
        BuildFailure
            Docker build error or daemon failure.
        """
        logger.info("Building image %s from %s", image.reference, workspace_path)
        try:
            built, _logs = self.client.images.build(
                path=workspace_path,
                dockerfile=dockerfile,
                tag=image.reference,
                labels=image.labels,
                rm=True,
                forcerm=True,
            )
            for tag in image.extra_tags:
                built.tag(image.name, tag=tag)
        except BuildError as e:
            log_tail = "\n".join(
                str(chunk.get("stream", chunk.get("error", ""))).rstrip()
                for chunk in list(e.build_log)[-20:]
                if isinstance(chunk, dict)
            )
            raise BuildFailure(f"Docker build failed: {e.msg}", log_excerpt=log_tail) from e
        except APIError as e:
            raise BuildFailure(f"Docker API error during build: {e}") from e

        image.digest = built.id
        logger.info("Built %s (%s), tags: %s", image.reference, image.digest[:19], ", ".join(image.all_tags))
        return image
