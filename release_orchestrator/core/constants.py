"""
Constants
Centralised storage for stage names, the fixed needs-graph, and tag/commit rules.
"""
ARROW = "→"

# Stage names (order = display order of StageResults on a run)
STAGE_TEST = "test"
STAGE_LINT = "lint"
STAGE_BUILD = "build"
STAGE_DOCKER_BUILD = "docker_build"
STAGE_PUSH_AUTO = "docker_push_auto"
STAGE_PUSH_MANUAL = "docker_push_manual"
STAGE_UPDATE_K8S = "update-k8s"

STAGE_ORDER = [
    STAGE_TEST,
    STAGE_LINT,
    STAGE_BUILD,
    STAGE_DOCKER_BUILD,
    STAGE_PUSH_AUTO,
    STAGE_PUSH_MANUAL,
    STAGE_UPDATE_K8S,
]

# stage → predecessors that must ALL succeed
STAGE_NEEDS: dict[str, tuple[str, ...]] = {
    STAGE_TEST: (),
    STAGE_LINT: (),
    STAGE_BUILD: (STAGE_TEST, STAGE_LINT),
    STAGE_DOCKER_BUILD: (STAGE_BUILD,),
    STAGE_PUSH_AUTO: (STAGE_DOCKER_BUILD,),
    STAGE_PUSH_MANUAL: (STAGE_DOCKER_BUILD,),
    STAGE_UPDATE_K8S: (STAGE_PUSH_AUTO, STAGE_PUSH_MANUAL),
}

# Stages whose predecessors are mutually exclusive branches: one must succeed,
# the others must have been skipped by the gate.
ANY_OF_STAGES = frozenset({STAGE_UPDATE_K8S})

# Stages with external side effects: never cancelled mid-flight
SIDE_EFFECT_STAGES = frozenset({STAGE_PUSH_AUTO, STAGE_PUSH_MANUAL, STAGE_UPDATE_K8S})

SOURCE_STAGES = (STAGE_TEST, STAGE_LINT, STAGE_BUILD)

# Source stages that run side by side; each works on a private copy of the
# checkout since install steps (npm ci) rewrite the tree in place
ISOLATED_STAGES = frozenset({STAGE_TEST, STAGE_LINT})

# Artifact / image naming
BUILD_ARTIFACT_NAME = "build-artifacts"
IMAGE_TAG_PREFIX = "sha-"
SHORT_TAG_LENGTH = 7
LATEST_TAG = "latest"

# Approval environment guarding the manual push path
APPROVAL_ENVIRONMENT = "security-review"

# Commit rules
SKIP_CI_MARKER = "[skip ci]"
COMMIT_MESSAGE_TEMPLATE = "Update Kubernetes deployment with new image tag: {short_tag} " + SKIP_CI_MARKER
