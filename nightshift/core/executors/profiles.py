"""
Executor Profiles
=================

How each supported CLI is invoked: binary, argument layout, where the
prompt goes and which environment variable selects the account.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from nightshift.core.config import Settings
from nightshift.core.models import ExecutorType

# Prompts longer than this go through stdin instead of argv
STDIN_PROMPT_THRESHOLD = 64_000

# Always forced into the child environment
ENV_OVERRIDES = {
    "NO_COLOR": "1",
    "TERM": "dumb",
    "CI": "1",
}


@dataclass
class CommandSpec:
    """One concrete command line."""
    argv: list[str]
    stdin_data: Optional[bytes] = None
    env_extra: dict[str, str] = field(default_factory=dict)


@dataclass
class InvocationOptions:
    """Per-call knobs the profiles understand."""
    cwd: Optional[str] = None
    model: Optional[str] = None
    resume_session_id: Optional[str] = None
    context: Optional[str] = None
    include_directories: list[str] = field(default_factory=list)
    sandbox: bool = False


def compose_prompt(prompt: str, context: Optional[str]) -> str:
    if not context:
        return prompt
    return f"{context}\n\n---\n\n{prompt}"


def build_env(
    base: dict[str, str],
    denylist: list[str],
    extra: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """Filtered copy of the host environment plus deterministic overrides."""
    blocked = {name.upper() for name in denylist}
    env = {k: v for k, v in base.items() if k.upper() not in blocked}
    env.update(ENV_OVERRIDES)
    if extra:
        env.update(extra)
    return env


class ExecutorProfile(ABC):
    """Argument layout for one executor CLI."""

    executor: ExecutorType
    account_env_var: Optional[str] = None

    def __init__(self, binary: str, timeout: float, default_model: Optional[str] = None):
        self.binary = binary
        self.timeout = timeout
        self.default_model = default_model

    @abstractmethod
    def build_command(self, prompt: str, options: InvocationOptions) -> CommandSpec:
        """Build argv and stdin payload for one call."""
        pass

    def account_env(self, credential_home: Optional[str]) -> dict[str, str]:
        if self.account_env_var and credential_home:
            return {self.account_env_var: os.path.expanduser(credential_home)}
        return {}

    def _prompt_placement(self, prompt: str, options: InvocationOptions) -> tuple[Optional[str], Optional[bytes]]:
        """Trailing argument for short prompts, stdin for large context."""
        full = compose_prompt(prompt, options.context)
        if options.context or len(full) > STDIN_PROMPT_THRESHOLD:
            return None, full.encode("utf-8")
        return full, None


class ClaudeProfile(ExecutorProfile):
    executor = ExecutorType.CLAUDE

    def build_command(self, prompt: str, options: InvocationOptions) -> CommandSpec:
        argv = [
            self.binary,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--dangerously-skip-permissions",
        ]
        model = options.model or self.default_model
        if model:
            argv += ["--model", model]
        if options.resume_session_id:
            argv += ["--resume", options.resume_session_id]
        arg, stdin_data = self._prompt_placement(prompt, options)
        if arg is not None:
            argv.append(arg)
        return CommandSpec(argv=argv, stdin_data=stdin_data)


class GeminiProfile(ExecutorProfile):
    executor = ExecutorType.GEMINI
    account_env_var = "GEMINI_CLI_HOME"

    def build_command(self, prompt: str, options: InvocationOptions) -> CommandSpec:
        argv = [self.binary]
        model = options.model or self.default_model
        if model:
            argv += ["-m", model]
        argv += ["--output-format", "stream-json", "--yolo"]
        if options.resume_session_id:
            argv += ["--resume", options.resume_session_id]
        if options.sandbox:
            argv.append("--sandbox")
        for directory in options.include_directories:
            argv += ["--include-directories", directory]
        arg, stdin_data = self._prompt_placement(prompt, options)
        if arg is not None:
            argv.append(arg)
        return CommandSpec(argv=argv, stdin_data=stdin_data)


class CodexProfile(ExecutorProfile):
    executor = ExecutorType.CODEX

    def build_command(self, prompt: str, options: InvocationOptions) -> CommandSpec:
        argv = [self.binary, "exec", "--dangerously-bypass-approvals-and-sandbox"]
        model = options.model or self.default_model
        if model:
            argv += ["-m", model]
        arg, stdin_data = self._prompt_placement(prompt, options)
        # codex exec reads the prompt from stdin when given "-"
        argv.append(arg if arg is not None else "-")
        return CommandSpec(argv=argv, stdin_data=stdin_data)


class KimiProfile(ExecutorProfile):
    executor = ExecutorType.KIMI

    def build_command(self, prompt: str, options: InvocationOptions) -> CommandSpec:
        argv = [self.binary, "--print", "--output-format", "stream-json", "--yolo"]
        model = options.model or self.default_model
        if model:
            argv += ["-m", model]
        if options.cwd:
            argv += ["-w", options.cwd]
        if options.resume_session_id:
            argv += ["--session", options.resume_session_id]
        arg, stdin_data = self._prompt_placement(prompt, options)
        if arg is not None:
            argv += ["-p", arg]
        return CommandSpec(argv=argv, stdin_data=stdin_data)


def build_profiles(config: Settings) -> dict[ExecutorType, ExecutorProfile]:
    """Profiles for every executor, configured from settings."""
    default_timeout = config.EXECUTOR_TIMEOUT_SECONDS
    return {
        ExecutorType.CLAUDE: ClaudeProfile(config.CLAUDE_PATH, default_timeout),
        ExecutorType.GEMINI: GeminiProfile(config.GEMINI_PATH, default_timeout, config.GEMINI_MODEL),
        ExecutorType.CODEX: CodexProfile(config.CODEX_PATH, config.CODEX_TIMEOUT_SECONDS),
        ExecutorType.KIMI: KimiProfile(config.KIMI_PATH, default_timeout, config.KIMI_MODEL),
    }
