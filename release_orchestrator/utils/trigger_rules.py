"""
Trigger Rules
=============
Activation predicate deciding whether a TriggerEvent starts a pipeline run.

Rules:
    - push to MAIN_BRANCH activates, EXCEPT when
        * every changed path is the deployment descriptor
          (the updater's own commit must never start a new run), or
        * the head commit message carries "[skip ci]"
    - pull_request targeting MAIN_BRANCH activates
    - anything else is ignored

An empty changed-path list means "unknown diff" and activates.

The predicate is pure: it looks only at the event, never at global trigger
history.
"""
import logging
from typing import Tuple

from release_orchestrator.core.config import DESCRIPTOR_PATH, MAIN_BRANCH
from release_orchestrator.core.constants import SKIP_CI_MARKER
from release_orchestrator.models.trigger import TriggerEvent

logger = logging.getLogger(__name__)


def _normalise(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


def only_descriptor_changed(changed_paths: list[str], descriptor_path: str = DESCRIPTOR_PATH) -> bool:
    """True if the diff is non-empty and confined to the descriptor file."""
    if not changed_paths:
        return False
    target = _normalise(descriptor_path)
    return all(_normalise(p) == target for p in changed_paths)


def evaluate_trigger(
    trigger: TriggerEvent,
    main_branch: str = MAIN_BRANCH,
    descriptor_path: str = DESCRIPTOR_PATH,
) -> Tuple[bool, str]:
    """
    Apply the activation rule.

    Returns
    -------
    (bool, str)
        Whether a run should be created, and a short reason for the log.
    """
    if trigger.branch != main_branch:
        return False, f"target branch '{trigger.branch}' is not '{main_branch}'"

    if trigger.event == "pull_request":
        return True, "pull request targeting main branch"

    if only_descriptor_changed(trigger.changed_paths, descriptor_path):
        return False, f"only {descriptor_path} changed"

    if SKIP_CI_MARKER in trigger.head_commit_message:
        return False, f"head commit carries {SKIP_CI_MARKER}"

    return True, "push to main branch"


def should_activate(
    trigger: TriggerEvent,
    main_branch: str = MAIN_BRANCH,
    descriptor_path: str = DESCRIPTOR_PATH,
) -> bool:
    activate, reason = evaluate_trigger(trigger, main_branch, descriptor_path)
    logger.info(
        "Trigger %s@%s %s: %s",
        trigger.event, trigger.revision[:7], "activates" if activate else "ignored", reason,
    )
    return activate
