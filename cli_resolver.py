"""
Locate and validate the Claude Code CLI before the server starts.

npm and similar installers put a wrapper on PATH rather than the real CLI
script. The resolver traces through that wrapper once to find the script it
actually runs, and on Windows falls back to reading the `.cmd` shim.
"""
import asyncio
import dataclasses
import logging
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CLI_NAME = "claude"
_PROBE_TIMEOUT_S = 15.0
_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")
_SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs")
# npm shims reference the script relative to the shim dir, e.g. "%dp0%\node_modules\...\cli.js"
_CMD_SCRIPT_RE = re.compile(r'"%~?dp0%?\\?([^"%]+?\.(?:js|mjs|cjs))"', re.IGNORECASE)
_TRACE_ENV = "CLAUDE_WEBUI_TRACE_FILE"
_TRACER_SOURCE = """const fs = require("fs");
const target = process.env.%s;
if (target) {
  fs.writeFileSync(target, process.argv[1] || "");
}
process.exit(0);
""" % _TRACE_ENV


class ExecutableNotFoundError(RuntimeError):
    pass


@dataclasses.dataclass(frozen=True)
class ResolvedCli:
    path: str
    version: str
    # Real script behind the PATH wrapper, when it could be traced.
    script_path: Optional[str] = None


async def _run_probe(argv: list[str], *, env: Optional[dict[str, str]] = None) -> tuple[int, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as e:
        logger.debug("Probe %s could not start: %s", argv, e)
        return -1, ""
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_PROBE_TIMEOUT_S)
    except asyncio.TimeoutError:
        logger.warning("Probe %s timed out after %.0fs", argv, _PROBE_TIMEOUT_S)
        proc.kill()
        await proc.wait()
        return -1, ""
    return proc.returncode, stdout.decode("utf-8", errors="replace")


async def _probe_version(path: str) -> Optional[str]:
    returncode, output = await _run_probe([path, "--version"])
    if returncode != 0:
        return None
    match = _VERSION_RE.search(output)
    return match.group(0) if match else None


async def _trace_script_path(wrapper: str) -> Optional[str]:
    with tempfile.TemporaryDirectory(prefix="claude-trace-") as tmp:
        tracer = Path(tmp) / "tracer.js"
        trace_file = Path(tmp) / "trace.txt"
        tracer.write_text(_TRACER_SOURCE, encoding="utf-8")

        env = dict(os.environ)
        require = f'--require "{tracer}"'
        env["NODE_OPTIONS"] = f"{env['NODE_OPTIONS']} {require}" if env.get("NODE_OPTIONS") else require
        env[_TRACE_ENV] = str(trace_file)

        await _run_probe([wrapper, "--version"], env=env)
        if not trace_file.is_file():
            return None
        traced = trace_file.read_text(encoding="utf-8").strip()
    if traced and Path(traced).is_file():
        return str(Path(traced).resolve())
    return None


def _parse_cmd_shim(shim: str) -> Optional[str]:
    try:
        text = Path(shim).read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.exception("Failed to read CLI shim %s", shim)
        return None
    shim_dir = Path(shim).parent
    for match in _CMD_SCRIPT_RE.finditer(text):
        relative = match.group(1).replace("\\", os.sep)
        candidate = shim_dir / relative
        if candidate.is_file():
            return str(candidate.resolve())
    return None


def _is_launchable(path: str) -> bool:
    # A bare script only runs directly when it is executable (shebang); Windows needs the shim.
    if sys.platform == "win32" and path.lower().endswith(_SCRIPT_SUFFIXES):
        return False
    return os.access(path, os.X_OK)


async def resolve_executable(explicit_path: Optional[str] = None) -> ResolvedCli:
    if explicit_path:
        version = await _probe_version(explicit_path)
        if not version:
            raise ExecutableNotFoundError(
                f"Claude CLI at {explicit_path} did not report a version; check --claude-path"
            )
        logger.info("Using Claude CLI %s (version %s)", explicit_path, version)
        return ResolvedCli(path=explicit_path, version=version)

    wrapper = shutil.which(CLI_NAME)
    if not wrapper:
        raise ExecutableNotFoundError(
            f"'{CLI_NAME}' was not found on PATH; install Claude Code or pass --claude-path"
        )

    script_path = await _trace_script_path(wrapper)
    if script_path is None and sys.platform == "win32" and wrapper.lower().endswith(".cmd"):
        script_path = _parse_cmd_shim(wrapper)
    if script_path:
        logger.info("Traced %s to script %s", wrapper, script_path)

    candidates: list[str] = []
    if script_path and _is_launchable(script_path):
        candidates.append(script_path)
    candidates.append(wrapper)

    for candidate in dict.fromkeys(candidates):
        version = await _probe_version(candidate)
        if version:
            logger.info("Using Claude CLI %s (version %s)", candidate, version)
            return ResolvedCli(path=candidate, version=version, script_path=script_path)
        logger.warning("Claude CLI candidate %s failed validation", candidate)

    raise ExecutableNotFoundError(f"No working Claude CLI found (tried {', '.join(candidates)})")
