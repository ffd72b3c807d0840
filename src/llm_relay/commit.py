"""Commit message generation from the working tree's git diff."""

from __future__ import annotations

import asyncio
import logging
import re

from llm_relay.config import ModelConfig, RelayConfig
from llm_relay.dispatcher import RequestDispatcher
from llm_relay.errors import ConfigError, RelayError
from llm_relay.types import Message

_logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 5000

SYSTEM_PROMPT = (
    "You are a helpful assistant that generates informative git commit messages "
    "based on git diffs output. Skip preamble and remove all backticks surrounding "
    "the commit message."
)

NOTES_PROMPT = "Notes from developer (ignore if not relevant): {notes}"

INSTRUCTION = """Based on the provided git diff, generate a concise and descriptive commit message.

The commit message should:
1. Has a short title (50-72 characters)
2. The commit message should adhere to the conventional commit format
3. Describe what was changed and why
4. Be clear and informative"""

_FENCE_RE = re.compile(r"^```[^\n]*\n?|```$")


class GitError(RelayError):
    """A git command failed."""


async def _git(args: list[str], cwd: str | None = None, timeout: int = 30) -> tuple[int, str, str]:
    """Run a git command asynchronously, returning (returncode, stdout, stderr)."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 1, "", f"git {args[0]} timed out after {timeout}s"
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def git_diff(cwd: str | None = None) -> str:
    """Staged changes, or unstaged changes when nothing is staged."""
    for args in (["diff", "--cached"], ["diff"]):
        rc, out, err = await _git(args, cwd)
        if rc != 0:
            raise GitError(err.strip() or f"git {' '.join(args)} failed")
        if out.strip():
            return out
    return ""


def truncate_diff(diff: str, limit: int = MAX_DIFF_CHARS) -> str:
    if len(diff) <= limit:
        return diff
    return diff[:limit] + "\n\n[Diff truncated due to size]"


def build_prompt(diff: str, notes: str = "") -> str:
    parts = [INSTRUCTION]
    if notes.strip():
        parts.append(NOTES_PROMPT.format(notes=notes.strip()))
    parts.append(truncate_diff(diff))
    return "\n\n".join(parts)


def system_prompt(language: str = "English") -> str:
    return f"{SYSTEM_PROMPT} Generate commit message in {language}."


def extract_commit_message(text: str) -> str:
    """Strip surrounding markdown fences and whitespace."""
    return _FENCE_RE.sub("", text.strip()).strip()


def commit_model(config: RelayConfig) -> ModelConfig:
    for m in config.models:
        if m.use_for_commit_generation:
            return m
    raise ConfigError(
        "No models configured for commit message generation. "
        "Set 'use_for_commit_generation: true' on at least one model."
    )


async def generate_commit_message(
    dispatcher: RequestDispatcher,
    diff: str,
    notes: str = "",
    model_id: str | None = None,
) -> str:
    """Ask the commit model for a message describing *diff*."""
    config = dispatcher.config
    if not diff.strip():
        raise GitError("No changes to describe")
    model_id = model_id or commit_model(config).full_id
    _logger.info("Generating commit message with %s", model_id)
    response = await dispatcher.send_once(
        model_id,
        system_prompt(config.commit_language),
        [Message.user(build_prompt(diff, notes))],
    )
    message = extract_commit_message(response)
    if not message:
        raise RelayError("empty API response")
    return message
