"""Git operations for the deployed working tree."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import CommandError

FALLBACK_BRANCHES = ("main", "master")


@dataclass(slots=True)
class GitResult:
    """Result from running a git command."""

    command: str
    output: str


class GitManager:
    """Thin wrapper around git CLI."""

    def __init__(self, runner: CommandRunner | None = None, *, remote: str = "origin") -> None:
        self._runner = runner or CommandRunner()
        self.remote = remote

    def current_revision(self, repo_path: Path) -> str:
        return self._rev_parse(repo_path, "HEAD")

    def stash_local_changes(self, repo_path: Path) -> GitResult:
        """Set aside uncommitted and untracked changes before syncing."""
        return self._run_git(repo_path, "stash", "push", "--include-untracked")

    def fetch(self, repo_path: Path) -> GitResult:
        return self._run_git(repo_path, "fetch", "--prune", self.remote)

    def reset_hard(self, repo_path: Path, revision: str) -> GitResult:
        return self._run_git(repo_path, "reset", "--hard", revision)

    def remote_revision(self, repo_path: Path, branch: str) -> str:
        return self._rev_parse(repo_path, f"refs/remotes/{self.remote}/{branch}")

    def exclude_paths(self, repo_path: Path, patterns: Iterable[str]) -> list[str]:
        """Append ``patterns`` to the repository's info/exclude and return the new ones.

        Excluded files count as ignored, so ``stash --include-untracked`` and
        ``reset --hard`` leave them in place.
        """
        command = ["git", "rev-parse", "--git-path", "info/exclude"]
        exclude_file = Path(self._runner.run(command, cwd=repo_path).stdout)
        if not exclude_file.is_absolute():
            exclude_file = repo_path / exclude_file
        text = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        existing = text.splitlines()
        added = [pattern for pattern in dict.fromkeys(patterns) if pattern not in existing]
        if added:
            exclude_file.parent.mkdir(parents=True, exist_ok=True)
            with exclude_file.open("a", encoding="utf-8") as handle:
                if text and not text.endswith("\n"):
                    handle.write("\n")
                handle.write("\n".join(added) + "\n")
        return added

    def has_remote_branch(self, repo_path: Path, branch: str) -> bool:
        try:
            self._run_git(
                repo_path, "show-ref", "--verify", "--quiet", f"refs/remotes/{self.remote}/{branch}"
            )
        except CommandError:
            return False
        return True

    def resolve_default_branch(self, repo_path: Path, preferred: str | None = None) -> str:
        """Return the first existing remote branch out of preferred, main, master."""
        candidates = [preferred] if preferred else []
        candidates.extend(name for name in FALLBACK_BRANCHES if name != preferred)
        for branch in candidates:
            if branch and self.has_remote_branch(repo_path, branch):
                return branch
        msg = f"No default branch found on {self.remote} (tried {', '.join(c for c in candidates if c)})"
        raise CommandError("git show-ref", 1, msg)

    def _rev_parse(self, repo_path: Path, ref: str) -> str:
        # stdout only; git reports ambiguous refs and similar warnings on stderr.
        command = ["git", "rev-parse", "--verify", f"{ref}^{{commit}}"]
        result = self._runner.run(command, cwd=repo_path)
        return result.stdout

    def _run_git(self, repo_path: Path, *args: str) -> GitResult:
        result = self._runner.run(["git", *args], cwd=repo_path)
        return GitResult(command=result.command, output=result.output)
