# tools.py
# Tool contract and the sandboxed file/search/check tools handed to agents.
#
# A tool declares its input shape as a pydantic model, built once per tool
# class. The runner never calls handlers directly: it goes through invoke(),
# which validates input, bounds execution time and turns every failure into
# an InvocationError that is reported back to the model.

import asyncio
import re
import shlex
import threading
import time
from contextvars import ContextVar
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Sequence

import regex
from pydantic import BaseModel, Field, ValidationError

from fixloop.errors import InvocationError
from fixloop.models import ToolDescription

BINARY_CHECK_SIZE = 8192
EXCLUDED_DIRS = frozenset({".git", "node_modules", "bin", "obj", "__pycache__", ".venv"})
REGEX_TIMEOUT = 5.0
GREP_BUDGET = 55.0

# Set by AgentTool.handle once the caller stopped waiting for a threaded run().
_call_abandoned: ContextVar[threading.Event | None] = ContextVar("call_abandoned", default=None)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class EmptyInput(BaseModel):
    """Input shape for tools that take no arguments."""


@lru_cache(maxsize=None)
def _input_schema(model: type[BaseModel]) -> dict[str, Any]:
    return model.model_json_schema()


class AgentTool:
    """
    Base class for a capability exposed to the model.

    Subclasses set ``name``, ``description`` and ``input_model`` and
    implement either ``run`` (blocking, executed in a worker thread) or
    ``handle`` (async). Both return a pydantic model.

    A worker thread cannot be interrupted. When a threaded ``run`` times
    out or is cancelled it keeps going in the background, so any ``run``
    with side effects calls ``ensure_not_abandoned()`` right before them.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    input_model: type[BaseModel] = EmptyInput

    # Per-tool execution bound; overrides the runner's default when set.
    timeout: float | None = None

    def describe(self) -> ToolDescription:
        return ToolDescription(
            name=self.name,
            description=self.description,
            parameters=_input_schema(self.input_model),
        )

    def as_openai_tool(self) -> dict[str, Any]:
        spec = self.describe()
        return {
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.parameters,
            },
        }

    def parse_input(self, raw_input: Any) -> BaseModel:
        try:
            if isinstance(raw_input, (str, bytes)):
                return self.input_model.model_validate_json(raw_input or "{}")
            return self.input_model.model_validate(raw_input or {})
        except ValidationError as exc:
            raise InvocationError(f"Invalid input for {self.name}: {exc}") from exc

    def run(self, args: Any) -> BaseModel:
        raise NotImplementedError

    async def handle(self, args: Any) -> BaseModel:
        abandoned = threading.Event()
        # to_thread copies the current context, so the worker sees this flag.
        token = _call_abandoned.set(abandoned)
        try:
            return await asyncio.to_thread(self.run, args)
        except BaseException:
            abandoned.set()
            raise
        finally:
            _call_abandoned.reset(token)

    def ensure_not_abandoned(self) -> None:
        event = _call_abandoned.get()
        if event is not None and event.is_set():
            raise InvocationError(f"{self.name} was abandoned before it finished")

    async def invoke(self, raw_input: Any, timeout: float | None = None) -> str:
        """Validate, execute and serialize. Raises InvocationError on any failure."""
        args = self.parse_input(raw_input)
        limit = self.timeout if self.timeout is not None else timeout
        try:
            if limit is None:
                output = await self.handle(args)
            else:
                output = await asyncio.wait_for(self.handle(args), timeout=limit)
        except InvocationError:
            raise
        except asyncio.TimeoutError as exc:
            raise InvocationError(f"{self.name} timed out after {limit:g} seconds") from exc
        except Exception as exc:
            raise InvocationError(f"{self.name} failed: {exc}") from exc
        return output.model_dump_json()


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


def resolve_sandbox_path(root: str | Path, path: str) -> Path:
    """
    Resolve ``path`` against ``root`` and reject anything that escapes it.

    Absolute paths are accepted only when they land inside the root.
    Symlinks are resolved before the check.
    """
    if not path or not path.strip():
        raise InvocationError("Input path cannot be empty.")
    base = Path(root).resolve()
    candidate = (base / path).resolve()
    if not candidate.is_relative_to(base):
        raise InvocationError(
            f"The path '{path}' is invalid or outside the allowed base directory."
        )
    return candidate


def check_sandbox_pattern(pattern: str) -> str:
    """Reject glob patterns that are absolute or climb out with '..'."""
    segments = re.split(r"[\\/]", pattern)
    if Path(pattern).is_absolute() or pattern.startswith(("/", "\\")) or ".." in segments:
        raise InvocationError(
            f"The pattern '{pattern}' is invalid or outside the allowed base directory."
        )
    return pattern


def _iter_sandbox_files(root: Path, pattern: str | None) -> list[Path]:
    candidates = root.glob(pattern) if pattern else root.rglob("*")
    files: list[Path] = []
    for candidate in candidates:
        relative = candidate.relative_to(root)
        if EXCLUDED_DIRS.intersection(relative.parts[:-1]):
            continue
        if not candidate.is_file():
            continue
        if not candidate.resolve().is_relative_to(root):
            continue
        files.append(candidate)
    return sorted(files)


class SandboxTool(AgentTool):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()


# ---------------------------------------------------------------------------
# ReadFileLines
# ---------------------------------------------------------------------------


class ReadFileLinesInput(BaseModel):
    file_path: str = Field(..., description="Relative path of the file to read")
    start_line: int = Field(1, description="Starting line number (1-indexed, inclusive)")
    end_line: int = Field(
        -1, description="Ending line number (1-indexed, inclusive). Use -1 to read to end of file."
    )


class ReadFileLinesOutput(BaseModel):
    content: str = Field(..., description="The requested lines, with line numbers prefixed")
    start_line: int = Field(..., description="The actual start line returned")
    end_line: int = Field(..., description="The actual end line returned")
    total_lines: int = Field(..., description="Total number of lines in the file")


class ReadFileLinesTool(SandboxTool):
    name = "ReadFileLines"
    description = "Read specific line ranges from a file with line numbers prefixed"
    input_model = ReadFileLinesInput

    def run(self, args: ReadFileLinesInput) -> ReadFileLinesOutput:
        path = resolve_sandbox_path(self.root, args.file_path)
        if not path.is_file():
            raise InvocationError(f"{args.file_path} does not exist")

        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        total = len(lines)
        if total == 0:
            return ReadFileLinesOutput(content="", start_line=0, end_line=0, total_lines=0)

        # Out-of-range bounds are clamped, not rejected.
        if args.start_line > total:
            return ReadFileLinesOutput(
                content="", start_line=args.start_line, end_line=args.start_line, total_lines=total
            )
        start = max(1, args.start_line)
        end = total if args.end_line == -1 else max(start, min(args.end_line, total))

        content = "\n".join(f"{n}. {lines[n - 1]}" for n in range(start, end + 1))
        return ReadFileLinesOutput(content=content, start_line=start, end_line=end, total_lines=total)


# ---------------------------------------------------------------------------
# ReadFile / WriteFile
# ---------------------------------------------------------------------------


class ReadFileInput(BaseModel):
    file_path: str = Field(..., description="Relative path of the file to read")


class ReadFileOutput(BaseModel):
    content: str = Field(..., description="Full text content of the file")


class ReadFileTool(SandboxTool):
    name = "ReadFile"
    description = "Read the full contents of a file"
    input_model = ReadFileInput

    def run(self, args: ReadFileInput) -> ReadFileOutput:
        path = resolve_sandbox_path(self.root, args.file_path)
        if not path.is_file():
            raise InvocationError(f"{args.file_path} does not exist")
        return ReadFileOutput(content=path.read_text(encoding="utf-8", errors="replace"))


class WriteFileInput(BaseModel):
    file_path: str = Field(..., description="Relative path of the file to write")
    content: str = Field(..., description="Complete new content of the file")


class WriteFileOutput(BaseModel):
    bytes_written: int


class WriteFileTool(SandboxTool):
    name = "WriteFile"
    description = "Write (or overwrite) a file with the given content"
    input_model = WriteFileInput

    def run(self, args: WriteFileInput) -> WriteFileOutput:
        path = resolve_sandbox_path(self.root, args.file_path)
        data = args.content.encode("utf-8")
        self.ensure_not_abandoned()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return WriteFileOutput(bytes_written=len(data))


# ---------------------------------------------------------------------------
# Glob
# ---------------------------------------------------------------------------


class GlobInput(BaseModel):
    pattern: str = Field(..., description="Glob pattern to match files (e.g. '**/*.py', 'src/**/*.ts')")


class GlobOutput(BaseModel):
    files: list[str] = Field(..., description="Matching file paths relative to the base directory")


class GlobTool(SandboxTool):
    name = "Glob"
    description = "Find files by name patterns using glob syntax"
    input_model = GlobInput

    def run(self, args: GlobInput) -> GlobOutput:
        if not args.pattern.strip():
            raise InvocationError("Pattern cannot be empty.")
        files = _iter_sandbox_files(self.root, check_sandbox_pattern(args.pattern))
        return GlobOutput(files=[f.relative_to(self.root).as_posix() for f in files])


# ---------------------------------------------------------------------------
# Grep
# ---------------------------------------------------------------------------


class GrepInput(BaseModel):
    pattern: str = Field(..., description="Regex pattern to search for")
    file_pattern: str | None = Field(
        None, description="Optional glob pattern to filter files (e.g. '**/*.py'). Defaults to all files."
    )
    ignore_case: bool = Field(False, description="If true, performs case-insensitive matching.")
    context_before: int = Field(0, ge=0, description="Number of context lines to include before each match.")
    context_after: int = Field(0, ge=0, description="Number of context lines to include after each match.")
    files_only: bool = Field(False, description="If true, returns only file paths without match details.")
    max_results: int = Field(100, ge=1, description="Maximum number of results to return.")


class GrepMatch(BaseModel):
    file: str = Field(..., description="File path relative to the base directory")
    line: int = Field(..., description="Line number of the match (1-indexed)")
    content: str = Field(..., description="The matching line (with context if requested)")


class GrepOutput(BaseModel):
    matches: list[GrepMatch]
    total_matches: int = Field(..., description="Total matches seen, may exceed the returned results")
    truncated: bool = Field(..., description="Whether results were cut off at max_results")


def _is_binary(path: Path) -> bool:
    with path.open("rb") as fh:
        return b"\0" in fh.read(BINARY_CHECK_SIZE)


def _with_context(lines: list[str], index: int, before: int, after: int) -> str:
    first = max(0, index - before)
    last = min(len(lines) - 1, index + after)
    rendered = []
    for i in range(first, last + 1):
        marker = ">" if i == index else " "
        rendered.append(f"{marker}{i + 1}: {lines[i]}")
    return "\n".join(rendered)


class GrepTool(SandboxTool):
    """
    Regex search over the sandbox. Each search is bounded by
    ``regex_timeout`` and the whole run by ``budget``; matching releases
    the GIL so a pathological pattern cannot stall the event loop.
    """

    name = "Grep"
    description = "Search file contents for regex patterns"
    input_model = GrepInput

    def __init__(self, root: str | Path, regex_timeout: float = REGEX_TIMEOUT, budget: float = GREP_BUDGET) -> None:
        super().__init__(root)
        self.regex_timeout = regex_timeout
        self.budget = budget

    def run(self, args: GrepInput) -> GrepOutput:
        if not args.pattern:
            raise InvocationError("Pattern cannot be empty.")
        try:
            compiled = regex.compile(args.pattern, regex.IGNORECASE if args.ignore_case else 0)
        except regex.error as exc:
            raise InvocationError(f"Invalid regex pattern: {exc}") from exc

        file_pattern = check_sandbox_pattern(args.file_pattern) if args.file_pattern else None
        files = _iter_sandbox_files(self.root, file_pattern)
        matches: list[GrepMatch] = []
        total = 0
        truncated = False
        deadline = time.monotonic() + self.budget

        def search(text: str, relative: str) -> bool:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise InvocationError(f"Grep exceeded its {self.budget:g} second search budget")
            limit = min(self.regex_timeout, remaining)
            try:
                return compiled.search(text, concurrent=True, timeout=limit) is not None
            except TimeoutError as exc:
                raise InvocationError(
                    f"Regex timed out after {limit:g} seconds in {relative}; simplify the pattern"
                ) from exc

        for position, path in enumerate(files):
            self.ensure_not_abandoned()
            try:
                if _is_binary(path):
                    continue
                lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError:
                continue

            relative = path.relative_to(self.root).as_posix()
            for index, text in enumerate(lines):
                if not search(text, relative):
                    continue
                total += 1
                if len(matches) >= args.max_results:
                    continue
                if args.files_only:
                    matches.append(GrepMatch(file=relative, line=index + 1, content=""))
                    break
                if args.context_before or args.context_after:
                    content = _with_context(lines, index, args.context_before, args.context_after)
                else:
                    content = f"{index + 1}: {text}"
                matches.append(GrepMatch(file=relative, line=index + 1, content=content))

            if len(matches) >= args.max_results:
                truncated = total > len(matches) or position < len(files) - 1
                break

        return GrepOutput(matches=matches, total_matches=total, truncated=truncated)


# ---------------------------------------------------------------------------
# Check
# ---------------------------------------------------------------------------


class CheckOutput(BaseModel):
    success: bool = Field(..., description="Whether the check command succeeded")
    output: str = Field(..., description="Check output or diagnostics")


class CheckTool(SandboxTool):
    """Runs the project's check command (compile, lint, type check) in the sandbox."""

    name = "Check"
    description = "Run the project's check command to validate there are no errors after your changes"

    def __init__(self, root: str | Path, command: str | Sequence[str], timeout: float = 120.0) -> None:
        super().__init__(root)
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        self.command_timeout = timeout
        # The subprocess has its own deadline; leave room to report it.
        self.timeout = timeout + 5

    async def handle(self, args: EmptyInput) -> CheckOutput:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            return CheckOutput(success=False, output=f"Failed to run check command: {exc}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            return CheckOutput(
                success=False, output=f"Check timed out after {self.command_timeout:g} seconds"
            )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode == 0:
            return CheckOutput(success=True, output=output or "Check passed")
        return CheckOutput(success=False, output=output or f"Check exited with code {process.returncode}")


def sandbox_tools(root: str | Path, check_command: str | None = None, check_timeout: float = 120.0) -> list[AgentTool]:
    """The standard tool set for an agent working inside ``root``."""
    tools: list[AgentTool] = [
        GlobTool(root),
        GrepTool(root),
        ReadFileLinesTool(root),
        ReadFileTool(root),
        WriteFileTool(root),
    ]
    if check_command:
        tools.append(CheckTool(root, check_command, timeout=check_timeout))
    return tools
