"""
Multi-stage command pipeline executor.

Runs a chain of shell commands connected by pipes (`dump | compress | write`)
and attributes success or failure to each stage individually. Every stage is
spawned as its own child process, so its real exit status is read straight
from the process handle instead of being masked by the exit status of the
last command in a shell pipeline.

The stderr of every stage (and the stdout of the last stage) is collected in
a single stream, so messages from several stages may be interleaved.
"""

import logging
import subprocess
import tempfile
from typing import Iterable, List, Optional, Sequence, Tuple

from stowaway.utils.helpers import command_name

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for pipeline errors."""
    pass


class LaunchError(PipelineError):
    """Raised when the pipeline's processes could not be spawned."""
    pass


class StageFailure(PipelineError):
    """
    A stage that exited with a code outside its acceptable set.

    Failures are collected on the PipelineRun rather than raised by run().
    """

    def __init__(self, stage_index: int, command: str, exit_code: int):
        self.stage_index = stage_index
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"'{command_name(command)}' returned exit code: {exit_code}")

    @property
    def errno(self) -> int:
        return self.exit_code


class Stage:
    """One command within a pipeline."""

    def __init__(self, command: str, acceptable_exit_codes: Iterable[int] = (0,)):
        self.command = command
        self.acceptable_exit_codes = frozenset(acceptable_exit_codes)

    def accepts(self, exit_code: int) -> bool:
        return exit_code in self.acceptable_exit_codes

    def __repr__(self):
        return f'<Stage {self.command!r} ok={sorted(self.acceptable_exit_codes)}>'


def attribute_exit_codes(stages: Sequence[Stage], statuses: Iterable[Tuple[int, int]]) -> List[StageFailure]:
    """
    Match reported exit codes back to the stages that produced them.

    Args:
        stages: Pipeline stages in pipeline order
        statuses: (stage_index, exit_code) pairs in any order

    Returns:
        StageFailure for every stage whose exit code is not acceptable,
        ordered by stage index
    """
    failures = []
    for index, exit_code in statuses:
        stage = stages[index]
        if not stage.accepts(exit_code):
            failures.append(StageFailure(index, stage.command, exit_code))

    failures.sort(key=lambda failure: failure.stage_index)
    return failures


class PipelineRun:
    """
    Result of a single Pipeline.run() invocation.

    Attributes:
        stages: The stages that were executed
        stderr: Combined stderr output of all stages
        errors: StageFailure for each stage outside its acceptable exit codes
    """

    def __init__(self, stages: Sequence[Stage]):
        self.stages = tuple(stages)
        self.stderr = ''
        self.errors: List[StageFailure] = []

    @property
    def success(self) -> bool:
        """True if every stage exited with an acceptable code."""
        return not self.errors

    def stderr_messages(self) -> Optional[str]:
        """
        Format the collected stderr output for logging.

        Returns:
            Indented message block, or None if there was no stderr output
        """
        if not self.stderr:
            return None

        lines = [
            "Pipeline STDERR Messages:",
            "(Note: may be interleaved if multiple commands returned error messages)",
            "",
        ]
        lines.extend(self.stderr.splitlines())
        return ''.join(f"  {line}\n" if line else "\n" for line in lines)

    def error_messages(self) -> str:
        """
        Format stderr output and stage failures for an error report.
        """
        messages = self.stderr_messages() or ''
        messages += "The following system errors were returned:\n"
        messages += '\n'.join(f"{type(error).__name__}: {error}" for error in self.errors)
        return messages


class Pipeline:
    """
    Builds and runs a chain of shell commands connected by pipes.

    Usage:
        pipeline = Pipeline()
        pipeline.add("tar -cf - /etc", [0, 1])
        pipeline.append("gzip")
        pipeline.append("cat > '/tmp/etc.tar.gz'")
        result = pipeline.run()
        if not result.success:
            raise SomeError(result.error_messages())
    """

    def __init__(self, shell: Optional[str] = None):
        """
        Initialize an empty pipeline.

        Args:
            shell: Shell used to run each stage (default: /bin/sh)
        """
        self.shell = shell
        self.stages: List[Stage] = []

    def add(self, command: str, acceptable_exit_codes: Iterable[int] = (0,)) -> 'Pipeline':
        """
        Append a command with the exit codes that count as success.

        Args:
            command: Fully formed, shell-escaped command string
            acceptable_exit_codes: Exit codes that do not count as failure

        Returns:
            The pipeline, for chaining
        """
        self.stages.append(Stage(command, acceptable_exit_codes))
        return self

    def append(self, command: str) -> 'Pipeline':
        """Append a command for which only exit code 0 is acceptable."""
        return self.add(command, (0,))

    @property
    def commands(self) -> List[str]:
        return [stage.command for stage in self.stages]

    def run(self) -> PipelineRun:
        """
        Execute all stages as one pipeline and wait for every process to exit.

        Returns:
            PipelineRun with the collected stderr and per-stage failures

        Raises:
            LaunchError: If a stage's process could not be spawned
        """
        if not self.stages:
            raise PipelineError("Pipeline has no commands to run")

        run = PipelineRun(self.stages)

        with tempfile.TemporaryFile() as stderr_file:
            processes = self._spawn(stderr_file)
            statuses = [
                (index, _shell_status(process.wait()))
                for index, process in enumerate(processes)
            ]
            stderr_file.seek(0)
            run.stderr = stderr_file.read().decode('utf-8', errors='replace').strip()

        run.errors = attribute_exit_codes(self.stages, statuses)

        if run.success and run.stderr:
            logger.warning(run.stderr_messages())

        return run

    def _spawn(self, stderr_file) -> List[subprocess.Popen]:
        """Start one process per stage, each reading the previous stage's stdout."""
        processes: List[subprocess.Popen] = []
        last_index = len(self.stages) - 1

        try:
            for index, stage in enumerate(self.stages):
                stdin = processes[-1].stdout if processes else subprocess.DEVNULL
                stdout = stderr_file if index == last_index else subprocess.PIPE

                process = subprocess.Popen(
                    stage.command,
                    shell=True,
                    executable=self.shell,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr_file
                )
                processes.append(process)

                # The child holds its own copy; closing ours lets the upstream
                # stage receive SIGPIPE if this one exits early.
                if index > 0:
                    processes[index - 1].stdout.close()

        except OSError as e:
            for process in processes:
                if process.stdout:
                    process.stdout.close()
                process.kill()
                process.wait()
            raise LaunchError(f"Pipeline failed to execute: {e}") from e

        return processes


def _shell_status(returncode: int) -> int:
    """Report signal deaths the way a shell's $? does (128 + signal)."""
    if returncode < 0:
        return 128 - returncode
    return returncode
