"""Tests for logging_utils module."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from workgraph.logging_utils import configure_logging, summarize_pytest_failures


class TestSummarizePytestFailures:
    """Test summarize_pytest_failures function."""

    def test_empty_log(self):
        """Test with empty log text."""
        result = summarize_pytest_failures("")

        assert result["failed"] == []
        assert result["first_error"] is None
        assert result["passed_count"] is None
        assert result["failed_count"] is None

    def test_single_failure(self):
        """Test with single test failure."""
        log_text = """
test_module.py::test_something FAILED

________________________________ test_something ________________________________
E   AssertionError: expected 1 but got 2
"""

        result = summarize_pytest_failures(log_text)

        assert len(result["failed"]) == 1
        assert result["failed"][0] == "test_module.py::test_something"
        assert "AssertionError" in result["first_error"]

    def test_max_failed_limit(self):
        """Test that max_failed limits the number of failures captured."""
        log_text = "\n".join(f"test_a.py::test_{i} FAILED" for i in range(1, 8))

        result = summarize_pytest_failures(log_text, max_failed=3)

        assert len(result["failed"]) == 3
        assert result["failed"][0] == "test_a.py::test_1"
        assert result["failed"][2] == "test_a.py::test_3"

    def test_default_max_failed(self):
        log_text = "\n".join(f"test_a.py::test_{i} FAILED" for i in range(1, 8))
        assert len(summarize_pytest_failures(log_text)["failed"]) == 5

    def test_no_assertion_line(self):
        result = summarize_pytest_failures("FAILED test_module.py::test_something\n")
        assert result["failed"] == ["test_module.py::test_something"]
        assert result["first_error"] is None

    def test_counts_from_summary_line(self):
        """The last line with counts carries the totals."""
        log_text = """
collected 10 items

test_module.py::test_success PASSED
test_module.py::test_fail FAILED
test_module.py::test_error FAILED

================================= FAILURES =================================
    def test_fail():
>       assert 1 == 2
E       AssertionError: assert 1 == 2

=========================== short test summary info ========================
FAILED test_module.py::test_fail - AssertionError: assert 1 == 2
FAILED test_module.py::test_error - ValueError: intentional error
==================== 1 failed, 8 passed, 1 error in 0.31s ====================
"""

        result = summarize_pytest_failures(log_text)

        assert len(result["failed"]) == 2
        assert "test_fail" in result["failed"][0]
        assert result["passed_count"] == 8
        assert result["failed_count"] == 2
        assert "AssertionError" in result["first_error"]

    def test_all_passed(self):
        result = summarize_pytest_failures("============ 12 passed in 1.02s ============\n")
        assert result["passed_count"] == 12
        assert result["failed_count"] == 0

    def test_no_summary_line(self):
        result = summarize_pytest_failures("make: *** [build] Error\n")
        assert result["passed_count"] is None
        assert result["failed_count"] is None


class TestConfigureLogging:
    def test_file_sink_receives_messages(self, tmp_path: Path):
        log_file = tmp_path / "logs" / "workgraph.log"
        configure_logging("DEBUG", log_file)
        logger.info("checkpoint {} written", 7)
        logger.complete()
        configure_logging("INFO")
        assert "checkpoint 7 written" in log_file.read_text()
