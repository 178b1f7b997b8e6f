"""
Unit tests for the command pipeline (stowaway/backup/pipeline.py).

Pipelines are run against real /bin/sh commands.
"""

import itertools
import logging
import subprocess
from unittest.mock import patch

import pytest

from stowaway.backup.pipeline import (
    Pipeline,
    PipelineRun,
    PipelineError,
    LaunchError,
    Stage,
    StageFailure,
    attribute_exit_codes
)


class TestAttributeExitCodes:
    """Test matching exit codes back to stages."""

    def setup_method(self):
        self.stages = [
            Stage('first', [0, 1]),
            Stage('second', [0, 3]),
            Stage('third', [0]),
        ]

    def test_only_unacceptable_codes_fail(self):
        """Codes 1->3, 2->4, 0->1 leave exactly one failure: stage 2 with code 4."""
        failures = attribute_exit_codes(self.stages, [(1, 3), (2, 4), (0, 1)])

        assert len(failures) == 1
        assert failures[0].stage_index == 2
        assert failures[0].exit_code == 4
        assert failures[0].command == 'third'

    def test_attribution_ignores_report_order(self):
        """Any permutation of the reported statuses gives the same result."""
        statuses = [(0, 2), (1, 3), (2, 4)]
        expected = [(0, 2), (2, 4)]

        for permutation in itertools.permutations(statuses):
            failures = attribute_exit_codes(self.stages, permutation)
            assert [(f.stage_index, f.exit_code) for f in failures] == expected

    def test_all_acceptable(self):
        """No failures when every code is acceptable."""
        assert attribute_exit_codes(self.stages, [(0, 0), (1, 3), (2, 0)]) == []


class TestStageFailure:
    """Test StageFailure messages."""

    def test_message_uses_utility_name(self):
        """The message names the utility, not the full command."""
        failure = StageFailure(0, 'PGPASSFILE=/tmp/x sudo -n -u postgres /usr/bin/pg_dump mydb', 1)

        assert str(failure) == "'pg_dump' returned exit code: 1"
        assert failure.errno == 1


class TestPipelineRun:
    """Test PipelineRun message formatting."""

    def test_success_ignores_stderr(self):
        """A run with stderr output but no failures is successful."""
        run = PipelineRun([Stage('true')])
        run.stderr = 'warning: something happened'

        assert run.success is True

    def test_stderr_messages_empty(self):
        """No stderr gives no message block."""
        run = PipelineRun([Stage('true')])

        assert run.stderr_messages() is None

    def test_stderr_messages_format(self):
        """Stderr lines are indented under a header."""
        run = PipelineRun([Stage('true')])
        run.stderr = 'line one\nline two'

        assert run.stderr_messages() == (
            "  Pipeline STDERR Messages:\n"
            "  (Note: may be interleaved if multiple commands returned error messages)\n"
            "\n"
            "  line one\n"
            "  line two\n"
        )

    def test_error_messages_lists_failures(self):
        """Error messages end with every stage failure."""
        run = PipelineRun([Stage('gzip'), Stage('cat')])
        run.errors = [StageFailure(0, 'gzip', 1), StageFailure(1, 'cat', 2)]

        messages = run.error_messages()

        assert messages.startswith("The following system errors were returned:\n")
        assert "StageFailure: 'gzip' returned exit code: 1" in messages
        assert "StageFailure: 'cat' returned exit code: 2" in messages


class TestPipeline:
    """Test running pipelines."""

    def test_add_and_append_chain(self):
        """add/append return the pipeline and keep command order."""
        pipeline = Pipeline().add('tar -cf - /etc', [0, 1]).append('gzip')

        assert pipeline.commands == ['tar -cf - /etc', 'gzip']
        assert pipeline.stages[0].acceptable_exit_codes == frozenset({0, 1})
        assert pipeline.stages[1].acceptable_exit_codes == frozenset({0})

    def test_empty_pipeline_raises(self):
        """Running a pipeline without commands raises."""
        with pytest.raises(PipelineError):
            Pipeline().run()

    def test_successful_pipeline_writes_output(self, tmp_path):
        """Data flows through every stage into the output file."""
        output = tmp_path / 'out.txt'

        pipeline = Pipeline()
        pipeline.append("printf 'hello world'")
        pipeline.append('tr a-z A-Z')
        pipeline.append(f"cat > '{output}'")
        result = pipeline.run()

        assert result.success
        assert result.errors == []
        assert output.read_text() == 'HELLO WORLD'

    def test_failure_in_first_stage_is_detected(self, tmp_path):
        """A failing first stage is reported even though later stages succeed."""
        output = tmp_path / 'out.txt'

        pipeline = Pipeline()
        pipeline.append('echo partial; exit 2')
        pipeline.append('cat')
        pipeline.append(f"cat > '{output}'")
        result = pipeline.run()

        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].stage_index == 0
        assert result.errors[0].exit_code == 2

    def test_acceptable_exit_code_is_not_a_failure(self):
        """Exit code 1 is fine for a stage that accepts it."""
        pipeline = Pipeline()
        pipeline.add('exit 1', [0, 1])
        pipeline.append('cat > /dev/null')

        assert pipeline.run().success

    def test_multiple_failures(self):
        """Every failing stage is reported, ordered by stage."""
        pipeline = Pipeline()
        pipeline.append('exit 3')
        pipeline.append('cat > /dev/null; exit 4')
        result = pipeline.run()

        assert [(e.stage_index, e.exit_code) for e in result.errors] == [(0, 3), (1, 4)]

    def test_stderr_is_collected(self):
        """Stderr from every stage ends up in the run's stderr."""
        pipeline = Pipeline()
        pipeline.append('echo first-error >&2; exit 5')
        pipeline.append('echo second-error >&2; cat > /dev/null')
        result = pipeline.run()

        assert 'first-error' in result.stderr
        assert 'second-error' in result.stderr
        assert 'first-error' in result.error_messages()

    def test_stderr_on_success_is_logged_as_warning(self, caplog):
        """A successful run with stderr output logs a warning."""
        pipeline = Pipeline()
        pipeline.append('echo just-a-notice >&2')

        with caplog.at_level(logging.WARNING, logger='stowaway.backup.pipeline'):
            result = pipeline.run()

        assert result.success
        assert any('just-a-notice' in record.getMessage() for record in caplog.records)

    def test_signal_death_reported_like_shell(self):
        """A stage killed by a signal reports 128 + signal number."""
        pipeline = Pipeline()
        pipeline.append('kill -9 $$')
        result = pipeline.run()

        assert result.errors[0].exit_code == 137

    def test_launch_failure_raises(self):
        """A missing shell raises LaunchError."""
        pipeline = Pipeline(shell='/nonexistent/shell')
        pipeline.append('true')

        with pytest.raises(LaunchError) as exc_info:
            pipeline.run()

        assert 'Pipeline failed to execute' in str(exc_info.value)

    def test_launch_failure_reaps_started_processes(self):
        """Processes started before a spawn failure are killed and reaped."""
        real_popen = subprocess.Popen
        started = []

        def popen(*args, **kwargs):
            if started:
                raise OSError('fork failed')
            process = real_popen(*args, **kwargs)
            started.append(process)
            return process

        pipeline = Pipeline()
        pipeline.append('sleep 30')
        pipeline.append('cat')

        with patch('stowaway.backup.pipeline.subprocess.Popen', side_effect=popen):
            with pytest.raises(LaunchError):
                pipeline.run()

        assert started[0].returncode is not None
