# programming/evaluator.py
"""
Sandboxed evaluation of a program against test cases.

Every test case runs in its own process (local backend) or container (docker backend),
in a fresh working directory holding the program, the harness and the data files, so a
test case that blows its CPU budget is reported as timed out without touching the others.

Backends
--------
local    subprocess with rlimits (RLIMIT_CPU, and RLIMIT_AS where the language tolerates it).
         For development and tests; isolation is only as good as the worker's account.
docker   one throwaway container per test case, network off, memory capped by the
         container (PROGRAMMING_CONTAINER_MEMORY), CPU time capped by a ulimit and a
         wall-clock poll that kills the container.

Per-test outcomes are passed / failed / error / timed_out. Anything that goes wrong in the
evaluator itself (no interpreter, Docker unreachable, unwritable work dir) raises
EvaluatorCrashed and the caller must not trust any partial result.
"""
from __future__ import annotations

import json
import logging
import os
import resource
import secrets
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional

import docker
from django.conf import settings

from . import languages
from .errors import EvaluatorCrashed
from .languages import Language
from .models import CPU_TIMEOUT

logger = logging.getLogger(__name__)

PASSED = "passed"
FAILED = "failed"
ERROR = "error"
TIMED_OUT = "timed_out"

PROGRAM_STEM = "answer"
HARNESS_NAME = "harness.py"
CASE_FILE = "case.json"
TOKEN_FILE = "verdict.token"

OUTPUT_LIMIT = 64 * 1024
WALL_GRACE_SECONDS = 2
# container start and teardown around each test case
CASE_OVERHEAD_SECONDS = 3

# Runs inside the sandbox: executes the program, evaluates expression and expected in its
# namespace and prints the verdict as the last stdout line, prefixed with the run's token.
# The token file is removed before the program starts, so the program cannot forge a verdict
# line; a program that exits on its own leaves no verdict at all.
PYTHON_HARNESS = '''\
import json
import os
import sys
import traceback


def main(program_path, case_path, token_path):
    with open(token_path) as f:
        token = f.read().strip()
    os.remove(token_path)
    with open(case_path) as f:
        case = json.load(f)
    dumps, write, out = json.dumps, os.write, os.dup(1)

    result = {"status": "error", "actual": "", "message": ""}
    namespace = {"__name__": "__grading__"}
    try:
        with open(program_path) as f:
            source = f.read()
        exec(compile(source, program_path, "exec"), namespace)
        actual = eval(case["expression"], namespace)
        expected = eval(case["expected"], namespace)
        result["actual"] = repr(actual)
        if actual == expected:
            result["status"] = "passed"
        else:
            result["status"] = "failed"
            result["message"] = "Expected %r but got %r" % (expected, actual)
    except BaseException:  # exit() and KeyboardInterrupt in the program count as errors too
        result["message"] = traceback.format_exc(limit=5)
    try:
        sys.stdout.flush()
    except BaseException:
        pass
    write(out, ("\\n" + token + dumps(result) + "\\n").encode("utf-8"))


if __name__ == "__main__":
    main(*sys.argv[1:4])
'''

HARNESSES = {"python": PYTHON_HARNESS}


@dataclass
class Limits:
    cpu_seconds: int
    memory_mb: Optional[int] = None

    def __post_init__(self):
        ceiling = min(getattr(settings, "PROGRAMMING_CPU_TIMEOUT", CPU_TIMEOUT), CPU_TIMEOUT)
        self.cpu_seconds = max(1, min(int(self.cpu_seconds or ceiling), ceiling))

    @classmethod
    def for_question(cls, question) -> "Limits":
        memory = question.memory_limit
        if memory is None:
            memory = getattr(settings, "PROGRAMMING_MEMORY_LIMIT", None)
        return cls(cpu_seconds=question.time_limit or CPU_TIMEOUT, memory_mb=memory)


def time_budget(limits: Limits, cases: int) -> int:
    """Wall-clock seconds ``cases`` test cases may take when each uses its whole allowance."""
    return max(cases, 1) * (limits.cpu_seconds + WALL_GRACE_SECONDS + CASE_OVERHEAD_SECONDS)


@dataclass
class TestCaseResult:
    identifier: str
    test_case_type: str
    outcome: str
    actual: str = ""
    message: str = ""
    stdout: str = ""
    stderr: str = ""
    elapsed_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome == PASSED

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class ExecResult:
    returncode: Optional[int]
    timed_out: bool
    stdout: str
    stderr: str
    elapsed_s: float
    memory_exceeded: bool = False


def run(language: str, code: str, test_cases: Iterable, limits: Limits,
        files: Optional[Dict[str, bytes]] = None, backend=None) -> List[TestCaseResult]:
    """Run ``code`` once per test case. ``test_cases`` are objects with identifier,
    test_case_type, expression and expected (model rows or TestCaseData)."""
    lang = languages.get(language)
    backend = backend or get_backend()
    try:
        workroot = _mktempdir(prefix="evaluate_")
    except OSError as e:
        raise EvaluatorCrashed(f"could not create work directory: {e}") from e

    results: List[TestCaseResult] = []
    try:
        for test_case in test_cases:
            case_dir = workroot / test_case.identifier
            token = secrets.token_hex(16)
            _prepare_case_dir(case_dir, lang, code, test_case, files or {}, token)
            argv = [HARNESS_NAME, lang.source_name(PROGRAM_STEM), CASE_FILE, TOKEN_FILE]
            executed = backend.execute(lang, case_dir, argv, limits)
            results.append(_interpret(test_case, executed, token))
    except EvaluatorCrashed:
        raise
    except (OSError, docker.errors.DockerException) as e:
        raise EvaluatorCrashed(str(e)) from e
    finally:
        shutil.rmtree(workroot, ignore_errors=True)

    logger.info("run: %s test cases, %s passed, %s timed out", len(results),
                sum(r.passed for r in results), sum(r.outcome == TIMED_OUT for r in results))
    return results


def _prepare_case_dir(case_dir: Path, lang: Language, code: str, test_case, files: Dict[str, bytes],
                      token: str) -> None:
    case_dir.mkdir(parents=True)
    for name, content in files.items():
        target = case_dir / PurePosixPath(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content if isinstance(content, bytes) else str(content).encode("utf-8"))
    (case_dir / lang.source_name(PROGRAM_STEM)).write_text(code, encoding="utf-8")
    (case_dir / HARNESS_NAME).write_text(HARNESSES[lang.harness], encoding="utf-8")
    (case_dir / TOKEN_FILE).write_text(token, encoding="ascii")
    (case_dir / CASE_FILE).write_text(
        json.dumps({"expression": test_case.expression, "expected": test_case.expected}), encoding="utf-8"
    )


def _interpret(test_case, executed: ExecResult, token: str) -> TestCaseResult:
    stdout, verdict = _split_verdict(executed.stdout, token)
    result = TestCaseResult(
        identifier=test_case.identifier,
        test_case_type=test_case.test_case_type,
        outcome=ERROR,
        stdout=stdout[-OUTPUT_LIMIT:],
        stderr=executed.stderr[-OUTPUT_LIMIT:],
        elapsed_s=round(executed.elapsed_s, 3),
    )
    if executed.memory_exceeded:
        result.message = "Memory limit exceeded."
        return result
    if executed.timed_out:
        result.outcome = TIMED_OUT
        result.message = "Time limit exceeded."
        return result
    if verdict is None:
        result.message = f"Program terminated abnormally (exit status {executed.returncode})."
        return result
    result.outcome = verdict.get("status") if verdict.get("status") in (PASSED, FAILED, ERROR) else ERROR
    result.actual = str(verdict.get("actual", ""))[:OUTPUT_LIMIT]
    result.message = str(verdict.get("message", ""))[:OUTPUT_LIMIT]
    return result


def _split_verdict(stdout: str, token: str):
    """Program output and the harness verdict (None when no line carries the token)."""
    at = stdout.rfind(token)
    if at < 0:
        return stdout, None
    line = stdout[at + len(token):].split("\n", 1)[0]
    program_output = stdout[:at]
    if program_output.endswith("\n"):
        program_output = program_output[:-1]
    try:
        verdict = json.loads(line)
    except ValueError:
        return program_output, None
    return program_output, verdict if isinstance(verdict, dict) else None


def _mktempdir(prefix: str = "evaluate_") -> Path:
    base = getattr(settings, "PROGRAMMING_WORK_DIR", "")
    if base:
        base_path = Path(base)
        try:
            base_path.mkdir(parents=True, exist_ok=True)
            if os.access(base_path, os.W_OK):
                return Path(tempfile.mkdtemp(prefix=prefix, dir=str(base_path)))
        except OSError:
            logger.warning("_mktempdir: %s not usable, falling back to system temp", base)
    return Path(tempfile.mkdtemp(prefix=prefix))


# -----------------------
# Local backend
# -----------------------
def _try_limit(limit, soft, hard):
    """setrlimit, capped at the current hard limit instead of failing."""
    _, cur_hard = resource.getrlimit(limit)
    if cur_hard != resource.RLIM_INFINITY:
        soft = min(soft, cur_hard)
        hard = min(hard, cur_hard)
    resource.setrlimit(limit, (soft, hard))


class LocalBackend:
    name = "local"

    def execute(self, lang: Language, workdir: Path, argv: List[str], limits: Limits) -> ExecResult:
        memory_bytes = None
        if limits.memory_mb and lang.memory_rlimit:
            memory_bytes = limits.memory_mb * 1024 * 1024

        def limit_child():
            _try_limit(resource.RLIMIT_CPU, limits.cpu_seconds, limits.cpu_seconds + 1)
            if memory_bytes:
                _try_limit(resource.RLIMIT_AS, memory_bytes, memory_bytes)

        start = time.monotonic()
        try:
            cp = subprocess.run(
                lang.local_command() + argv, cwd=str(workdir), preexec_fn=limit_child,
                stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                timeout=limits.cpu_seconds + WALL_GRACE_SECONDS,
            )
        except subprocess.TimeoutExpired as e:
            return ExecResult(None, True, _decode(e.stdout), _decode(e.stderr), time.monotonic() - start)

        # SIGXCPU at the soft CPU limit, SIGKILL at the hard one.
        timed_out = cp.returncode in (-signal.SIGXCPU, -signal.SIGKILL)
        return ExecResult(cp.returncode, timed_out, _decode(cp.stdout), _decode(cp.stderr),
                          time.monotonic() - start)


def _decode(data) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", "ignore")
    return str(data)


# -----------------------
# Docker backend
# -----------------------
class DockerBackend:
    name = "docker"
    poll_interval = 0.25

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def execute(self, lang: Language, workdir: Path, argv: List[str], limits: Limits) -> ExecResult:
        mem_limit = getattr(settings, "PROGRAMMING_CONTAINER_MEMORY", "1g")
        if limits.memory_mb:
            mem_limit = f"{limits.memory_mb}m"
        network = "bridge" if getattr(settings, "PROGRAMMING_ALLOW_NETWORK", False) else "none"

        start = time.monotonic()
        container = self.client.containers.run(
            lang.image,
            list(lang.command) + argv,
            detach=True,
            working_dir="/work",
            network_mode=network,
            mem_limit=mem_limit,
            nano_cpus=1_000_000_000,
            ulimits=[docker.types.Ulimit(name="cpu", soft=limits.cpu_seconds, hard=limits.cpu_seconds + 1)],
            volumes={str(workdir): {"bind": "/work", "mode": "rw"}},
        )
        try:
            exit_code = self._poll_wait_or_kill(container, limits.cpu_seconds + WALL_GRACE_SECONDS)
        finally:
            try:
                stdout = container.logs(stdout=True, stderr=False, tail=2000).decode("utf-8", "ignore")
                stderr = container.logs(stdout=False, stderr=True, tail=2000).decode("utf-8", "ignore")
            except docker.errors.APIError:
                stdout = stderr = ""
            try:
                container.remove(force=True)
            except docker.errors.APIError as e:
                logger.warning("execute: could not remove container %s: %s", getattr(container, "id", "?"), e)

        elapsed = time.monotonic() - start
        # Docker SIGKILLs a container that outgrows mem_limit; that 137 is not a timeout.
        oom_killed = bool(container.attrs.get("State", {}).get("OOMKilled"))
        # 128 + SIGXCPU / SIGKILL when the ulimit fires inside the container
        timed_out = not oom_killed and (
            exit_code is None or exit_code in (128 + signal.SIGXCPU, 128 + signal.SIGKILL)
        )
        return ExecResult(exit_code, timed_out, stdout, stderr, elapsed, memory_exceeded=oom_killed)

    def _poll_wait_or_kill(self, container, timeout: float) -> Optional[int]:
        """Exit code of the container, or None if it had to be killed."""
        start = time.monotonic()
        while True:
            container.reload()
            state = container.attrs.get("State", {})
            if state.get("Status") in ("exited", "dead"):
                return int(state.get("ExitCode", 1) or 0)
            if time.monotonic() - start > timeout:
                try:
                    container.kill()
                except docker.errors.APIError:
                    pass
                return None
            time.sleep(self.poll_interval)


BACKENDS = {"local": LocalBackend, "docker": DockerBackend}


def get_backend(name: Optional[str] = None):
    name = name or getattr(settings, "PROGRAMMING_EVALUATOR_BACKEND", "docker")
    try:
        return BACKENDS[name]()
    except KeyError:
        raise EvaluatorCrashed(f"unknown evaluator backend {name!r}") from None
