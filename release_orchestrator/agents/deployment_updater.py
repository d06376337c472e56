"""
Deployment Record Updater
=========================
Points the deployment descriptor at a freshly published image.

Algorithm (per attempt):
    1. Fresh read of the descriptor (content + storage version).
    2. Replace the deployment's image reference (formatting-preserving).
    3. Same content → NoChange, nothing committed.
    4. Commit "Update Kubernetes deployment with new image tag: <short> [skip ci]"
       and push without force.
    5. Storage moved since step 1 → discard and start over at step 1.

After DESCRIPTOR_UPDATE_RETRY_LIMIT attempts the update fails with
UpdateConflict. No lock is ever held: only this final commit step retries,
so concurrent runs never block each other.

The commit only touches the descriptor and carries [skip ci], which the
activation rule uses to suppress self-triggered runs.
"""
import logging
import time

from release_orchestrator.core.config import DESCRIPTOR_UPDATE_RETRY_LIMIT
from release_orchestrator.core.constants import COMMIT_MESSAGE_TEMPLATE
from release_orchestrator.core.errors import StaleDescriptor, UpdateConflict
from release_orchestrator.models.commit_result import CommitResult
from release_orchestrator.models.image import short_tag_from_reference
from release_orchestrator.parser.descriptor_editor import find_image_lines, replace_image_reference
from release_orchestrator.utils.content_hash import compute_text_digest

logger = logging.getLogger(__name__)


def build_commit_message(new_image_ref: str) -> str:
    return COMMIT_MESSAGE_TEMPLATE.format(short_tag=short_tag_from_reference(new_image_ref))


class DeploymentRecordUpdater:
    """
    Read-modify-write-retry updater over a descriptor store.

    The store must provide ``read(path)``, ``write(snapshot, content, message)``
    (raising StaleDescriptor when storage moved) and ``discard(snapshot)``.
    """

    def __init__(
        self,
        store,
        retry_limit: int = DESCRIPTOR_UPDATE_RETRY_LIMIT,
        retry_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.retry_limit = max(1, retry_limit)
        self.retry_delay = retry_delay

    def update(self, descriptor_location: str, deployment_name: str, new_image_ref: str) -> CommitResult:
        """
        Set ``deployment_name``'s image to ``new_image_ref`` in the descriptor.

        Returns
        -------
        CommitResult
            status "committed" with the new commit sha, or "no_change".

        Raises
        ------
        UpdateConflict
            Storage kept moving for every attempt.
        DescriptorError
            Descriptor missing/invalid or has no matching entry (not retried).
        """
        message = build_commit_message(new_image_ref)

        for attempt in range(1, self.retry_limit + 1):
            snapshot = self.store.read(descriptor_location)
            try:
                new_content = replace_image_reference(snapshot.content, deployment_name, new_image_ref)

                if new_content == snapshot.content:
                    logger.info(
                        "Descriptor %s already points at %s, nothing to commit",
                        descriptor_location, new_image_ref,
                    )
                    return CommitResult(
                        status="no_change",
                        descriptor_path=descriptor_location,
                        image_ref=new_image_ref,
                        message=message,
                        attempts=attempt,
                    )

                try:
                    commit_sha = self.store.write(snapshot, new_content, message)
                except StaleDescriptor as exc:
                    logger.warning(
                        "Descriptor update attempt %d/%d lost the race (%s), re-reading",
                        attempt, self.retry_limit, exc,
                    )
                    if attempt < self.retry_limit and self.retry_delay:
                        time.sleep(self.retry_delay)
                    continue
            finally:
                self.store.discard(snapshot)

            updated = [line.value for line in find_image_lines(new_content, deployment_name, "")]
            logger.info(
                "Updated deployment to use image: %s (commit %s, content %s, image lines: %s)",
                new_image_ref, commit_sha[:7], compute_text_digest(new_content), ", ".join(updated),
            )
            return CommitResult(
                status="committed",
                descriptor_path=descriptor_location,
                image_ref=new_image_ref,
                commit_sha=commit_sha,
                message=message,
                attempts=attempt,
            )

        raise UpdateConflict(
            f"Descriptor {descriptor_location} changed concurrently on all {self.retry_limit} attempts"
        )
