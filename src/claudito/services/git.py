"""Asynchronous wrapper around the ``git`` command line."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import CommandError

logger = logging.getLogger(__name__)

BRANCH_HEADER = re.compile(
    r"^## (?P<branch>.+?)(?:\.\.\.(?P<upstream>\S+))?(?: \[(?P<tracking>[^\]]+)\])?$"
)


def parse_status(output: str) -> Dict[str, Any]:
    """Parse ``git status --porcelain=v1 -b`` output.

    Returns:
        Dict with branch, upstream, ahead, behind and the staged, unstaged
        and untracked file lists (``{"path", "status"}`` entries).
    """
    status: Dict[str, Any] = {
        "isRepo": True,
        "branch": None,
        "upstream": None,
        "ahead": 0,
        "behind": 0,
        "staged": [],
        "unstaged": [],
        "untracked": [],
    }

    for line in output.splitlines():
        if not line:
            continue
        if line.startswith("## "):
            _parse_branch_header(line, status)
            continue

        index, worktree, path = line[0], line[1], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')

        if index == "?" and worktree == "?":
            status["untracked"].append({"path": path, "status": "?"})
            continue
        if index not in (" ", "?", "!"):
            status["staged"].append({"path": path, "status": index})
        if worktree not in (" ", "?", "!"):
            status["unstaged"].append({"path": path, "status": worktree})

    return status


def _parse_branch_header(line: str, status: Dict[str, Any]) -> None:
    if line.startswith("## No commits yet on "):
        status["branch"] = line[len("## No commits yet on "):]
        return
    if line.startswith("## HEAD (no branch)"):
        status["branch"] = "HEAD"
        return

    match = BRANCH_HEADER.match(line)
    if not match:
        return
    status["branch"] = match.group("branch")
    status["upstream"] = match.group("upstream")
    for part in (match.group("tracking") or "").split(","):
        part = part.strip()
        if part.startswith("ahead "):
            status["ahead"] = int(part[len("ahead "):])
        elif part.startswith("behind "):
            status["behind"] = int(part[len("behind "):])


class GitService:
    def __init__(self, git_path: str = "git"):
        self.git_path = git_path

    async def _run(self, cwd: str, *args: str, check: bool = True, ok_codes: Tuple[int, ...] = (0,)) -> Tuple[int, str, str]:
        command = [self.git_path, *args]
        logger.debug("Running %s in %s", " ".join(command), cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandError(command, -1, str(e), message="git is not installed") from e

        stdout, stderr = await process.communicate()
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if check and process.returncode not in ok_codes:
            raise CommandError(command, process.returncode, err.strip() or out.strip())
        return process.returncode, out, err

    async def _git(self, cwd: str, *args: str) -> str:
        _, out, _ = await self._run(cwd, *args)
        return out

    async def is_repository(self, cwd: str) -> bool:
        code, out, _ = await self._run(cwd, "rev-parse", "--is-inside-work-tree", check=False)
        return code == 0 and out.strip() == "true"

    # --- inspection -------------------------------------------------------------

    async def get_status(self, cwd: str) -> Dict[str, Any]:
        if not await self.is_repository(cwd):
            return {"isRepo": False, "branch": None, "upstream": None, "ahead": 0, "behind": 0,
                    "staged": [], "unstaged": [], "untracked": []}
        return parse_status(await self._git(cwd, "status", "--porcelain=v1", "-b", "--untracked-files=all"))

    async def get_branches(self, cwd: str) -> Dict[str, Any]:
        out = await self._git(cwd, "branch", "-a", "--format=%(HEAD) %(refname)")
        current: Optional[str] = None
        local: List[str] = []
        remote: List[str] = []

        for line in out.splitlines():
            if not line.strip():
                continue
            is_head, ref = line[0] == "*", line[2:].strip()
            if ref.startswith("refs/heads/"):
                name = ref[len("refs/heads/"):]
                local.append(name)
                if is_head:
                    current = name
            elif ref.startswith("refs/remotes/"):
                name = ref[len("refs/remotes/"):]
                if not name.endswith("/HEAD"):
                    remote.append(name)

        return {"current": current, "local": local, "remote": remote}

    async def get_diff(self, cwd: str, staged: bool = False) -> str:
        args = ["diff", "--cached"] if staged else ["diff"]
        return await self._git(cwd, *args)

    async def get_file_diff(self, cwd: str, path: str, staged: bool = False) -> str:
        if not staged and await self._is_untracked(cwd, path):
            # exits 1 when the files differ
            _, out, _ = await self._run(cwd, "diff", "--no-index", "--", "/dev/null", path, ok_codes=(0, 1))
            return out
        args = ["diff", "--cached", "--", path] if staged else ["diff", "--", path]
        return await self._git(cwd, *args)

    async def _is_untracked(self, cwd: str, path: str) -> bool:
        out = await self._git(cwd, "ls-files", "--others", "--exclude-standard", "--", path)
        return bool(out.strip())

    async def list_tags(self, cwd: str) -> List[str]:
        out = await self._git(cwd, "tag", "--list", "--sort=-creatordate")
        return [line.strip() for line in out.splitlines() if line.strip()]

    # --- index -------------------------------------------------------------------

    async def stage_files(self, cwd: str, paths: List[str]) -> None:
        await self._git(cwd, "add", "--", *paths)

    async def stage_all(self, cwd: str) -> None:
        await self._git(cwd, "add", "-A")

    async def unstage_files(self, cwd: str, paths: List[str]) -> None:
        await self._git(cwd, "reset", "-q", "HEAD", "--", *paths)

    async def unstage_all(self, cwd: str) -> None:
        await self._git(cwd, "reset", "-q", "HEAD")

    async def discard_changes(self, cwd: str, paths: List[str]) -> None:
        """Restore tracked files and delete untracked ones."""
        tracked: List[str] = []
        for path in paths:
            if await self._is_untracked(cwd, path):
                target = Path(cwd) / path
                if target.is_file() or target.is_symlink():
                    target.unlink()
                    logger.info("Removed untracked file %s", target)
            else:
                tracked.append(path)
        if tracked:
            await self._git(cwd, "checkout", "--", *tracked)

    async def commit(self, cwd: str, message: str) -> Dict[str, str]:
        await self._git(cwd, "commit", "-m", message)
        commit_hash = (await self._git(cwd, "rev-parse", "HEAD")).strip()
        return {"hash": commit_hash, "message": message}

    # --- branches and remotes ---------------------------------------------------

    async def create_branch(self, cwd: str, name: str, checkout: bool = False) -> None:
        if checkout:
            await self._git(cwd, "checkout", "-b", name)
        else:
            await self._git(cwd, "branch", name)

    async def checkout(self, cwd: str, branch: str) -> None:
        await self._git(cwd, "checkout", branch)

    async def push(self, cwd: str, remote: str = "origin", branch: Optional[str] = None, set_upstream: bool = False) -> Dict[str, Any]:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args.append(remote)
        if branch:
            args.append(branch)
        _, out, err = await self._run(cwd, *args)
        return {"success": True, "output": (out + err).strip()}

    async def pull(self, cwd: str, remote: str = "origin", branch: Optional[str] = None) -> Dict[str, Any]:
        args = ["pull", remote]
        if branch:
            args.append(branch)
        _, out, err = await self._run(cwd, *args)
        return {"success": True, "output": (out + err).strip()}

    async def create_tag(self, cwd: str, name: str, message: Optional[str] = None) -> None:
        if message:
            await self._git(cwd, "tag", "-a", name, "-m", message)
        else:
            await self._git(cwd, "tag", name)

    async def push_tag(self, cwd: str, name: str, remote: str = "origin") -> None:
        await self._git(cwd, "push", remote, f"refs/tags/{name}")
