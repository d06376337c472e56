"""
Command Resolver
================
Maps a detected project type to the install / test / lint / build commands
run by the source stages.

Commands are minimal safe defaults.
Resolver never executes commands — it only returns strings.
Commands are passed to the Build Executor for container execution.

Deterministic: same project_type → same commands, always.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ResolvedCommands:
    """
    Immutable container for resolved stage commands.

    Fields
    ------
    install_command : str
        Dependency installation command (e.g. "npm ci").
    test_command : str
        Unit test command (stage "test").
    lint_command : str
        Static analysis command (stage "lint").
    build_command : str
        Build command producing the output directory (stage "build").
    project_type : str
        The project type these commands were resolved for.
    """
    install_command: str
    test_command: str
    lint_command: str
    build_command: str
    project_type: str

    def for_stage(self, stage: str) -> str:
        """Return the command for a source stage ("test", "lint", "build")."""
        commands = {
            "test": self.test_command,
            "lint": self.lint_command,
            "build": self.build_command,
        }
        if stage not in commands:
            raise ValueError(f"No command for stage '{stage}'")
        return commands[stage]


# ---------------------------------------------------------------------------
# Command mapping: project_type → ResolvedCommands
# ---------------------------------------------------------------------------
_COMMAND_MAP: dict[str, ResolvedCommands] = {
    "node": ResolvedCommands(
        install_command="npm ci",
        test_command="npm test",
        lint_command="npm run lint",
        build_command="npm run build",
        project_type="node",
    ),
    "python": ResolvedCommands(
        install_command="pip install -r requirements.txt || pip install .",
        test_command="pytest",
        lint_command="pip install ruff && ruff check .",
        build_command="pip install build && python -m build --outdir dist",
        project_type="python",
    ),
    "go": ResolvedCommands(
        install_command="go mod download",
        test_command="go test ./...",
        lint_command="go vet ./...",
        build_command="go build -o dist/ ./...",
        project_type="go",
    ),
    "rust": ResolvedCommands(
        install_command="cargo fetch",
        test_command="cargo test",
        lint_command="cargo clippy -- -D warnings",
        build_command="cargo build --release && mkdir -p dist && cp -r target/release/. dist/",
        project_type="rust",
    ),
    "java": ResolvedCommands(
        install_command="mvn -q dependency:resolve",
        test_command="mvn test",
        lint_command="mvn -q checkstyle:check",
        build_command="mvn -q package -DskipTests && mkdir -p dist && cp target/*.jar dist/",
        project_type="java",
    ),
}

# Fallback when project type is unknown or None
_FALLBACK = ResolvedCommands(
    install_command="echo 'no install step — unknown project type'",
    test_command="echo 'no test command — unknown project type'",
    lint_command="echo 'no lint command — unknown project type'",
    build_command="mkdir -p dist",
    project_type="unknown",
)


def resolve_commands(project_type: Optional[str]) -> ResolvedCommands:
    """
    Look up stage commands for the given project type.

    Unknown or None project types get the no-op fallback.
    """
    if project_type is None:
        return _FALLBACK
    return _COMMAND_MAP.get(project_type, _FALLBACK)


def get_supported_project_types() -> list[str]:
    """Return all project types that have command mappings."""
    return sorted(_COMMAND_MAP.keys())
