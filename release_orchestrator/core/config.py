"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITHUB_TOKEN                  — Token used to clone the repository and push descriptor commits
    REGISTRY_HOST                 — Container registry host (default: ghcr.io)
    REGISTRY_USERNAME             — Registry login user (default: GitHub actor)
    REGISTRY_TOKEN                — Registry login password / token (default: GITHUB_TOKEN)
    MAIN_BRANCH                   — Branch whose pushes trigger releases (default: main)
    DESCRIPTOR_PATH               — Deployment manifest path inside the repo
    DEPLOYMENT_NAME               — Deployment entry to update (empty = every matching image)
    SEVERITY_THRESHOLD            — Scanner severities that count as vulnerable
    IGNORE_UNFIXED                — Ignore vulnerabilities without a fixed version (default: true)
    REGISTRY_PUSH_RETRY_LIMIT     — Push attempts before RegistryPushFailure surfaces
    DESCRIPTOR_UPDATE_RETRY_LIMIT — Read-modify-write attempts before UpdateConflict
    WEBHOOK_SECRET                — Shared secret for GitHub webhook signatures (optional)
    LOG_LEVEL / LOG_DIR           — Root log level and daily log file directory ("" disables the file)

Stage Timeouts:
    Every stage has its own timeout (STAGE_TIMEOUT_<STAGE> env var, seconds).
    A timeout is treated exactly like a stage failure. The manual approval
    wait has no timeout; it is a persisted run state, not a running stage.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

# Registry
REGISTRY_HOST = os.getenv("REGISTRY_HOST", "ghcr.io")
REGISTRY_USERNAME = os.getenv("REGISTRY_USERNAME", "")
REGISTRY_TOKEN = os.getenv("REGISTRY_TOKEN", GITHUB_TOKEN)
REGISTRY_PUSH_RETRY_LIMIT = int(os.getenv("REGISTRY_PUSH_RETRY_LIMIT", 3))
REGISTRY_PUSH_BACKOFF_SECONDS = float(os.getenv("REGISTRY_PUSH_BACKOFF_SECONDS", 2.0))

# Activation
MAIN_BRANCH = os.getenv("MAIN_BRANCH", "main")

# Deployment descriptor
DESCRIPTOR_PATH = os.getenv("DESCRIPTOR_PATH", "kubernetes/deployment.yaml")
DEPLOYMENT_NAME = os.getenv("DEPLOYMENT_NAME", "")
DESCRIPTOR_UPDATE_RETRY_LIMIT = int(os.getenv("DESCRIPTOR_UPDATE_RETRY_LIMIT", 5))
COMMIT_AUTHOR_NAME = os.getenv("COMMIT_AUTHOR_NAME", "GitHub Actions")
COMMIT_AUTHOR_EMAIL = os.getenv("COMMIT_AUTHOR_EMAIL", "actions@github.com")

# Vulnerability scanning
TRIVY_BINARY = os.getenv("TRIVY_BINARY", "trivy")
SEVERITY_THRESHOLD = os.getenv("SEVERITY_THRESHOLD", "CRITICAL,HIGH")
IGNORE_UNFIXED = _env_bool("IGNORE_UNFIXED", "true")
VULN_TYPES = os.getenv("VULN_TYPES", "os,library")

# Storage
RUNS_DIR = os.getenv("RUNS_DIR", "runs")
ARTIFACTS_DIR = os.getenv("ARTIFACTS_DIR", "artifacts")
WORKSPACE_DIR = os.getenv("WORKSPACE_DIR", "workspace")
BUILD_OUTPUT_DIR = os.getenv("BUILD_OUTPUT_DIR", "dist")

# Sandbox images used for test / lint / build: project_type → image
DOCKER_IMAGE_MAP: dict[str, str] = {
    "python": os.getenv("DOCKER_IMAGE_PYTHON", "python:3.11-slim"),
    "node":   os.getenv("DOCKER_IMAGE_NODE",   "node:20-slim"),
    "java":   os.getenv("DOCKER_IMAGE_JAVA",   "maven:3.9-eclipse-temurin-17"),
    "go":     os.getenv("DOCKER_IMAGE_GO",     "golang:1.22-bookworm"),
    "rust":   os.getenv("DOCKER_IMAGE_RUST",   "rust:1.77-slim"),
}
DEFAULT_DOCKER_IMAGE = os.getenv("DOCKER_IMAGE", "ubuntu:24.04")

# Per-stage timeouts (seconds)
STAGE_TIMEOUTS: dict[str, float] = {
    "test":               float(os.getenv("STAGE_TIMEOUT_TEST", 600)),
    "lint":               float(os.getenv("STAGE_TIMEOUT_LINT", 300)),
    "build":              float(os.getenv("STAGE_TIMEOUT_BUILD", 600)),
    "docker_build":       float(os.getenv("STAGE_TIMEOUT_DOCKER_BUILD", 1200)),
    "docker_push_auto":   float(os.getenv("STAGE_TIMEOUT_DOCKER_PUSH", 600)),
    "docker_push_manual": float(os.getenv("STAGE_TIMEOUT_DOCKER_PUSH", 600)),
    "update-k8s":         float(os.getenv("STAGE_TIMEOUT_UPDATE_K8S", 300)),
}

# Webhooks
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
