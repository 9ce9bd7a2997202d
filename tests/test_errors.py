"""
Unit tests for failure classification and user-facing messages.
"""

import errno

from errors import (
    ErrorManager,
    FailureCategory,
    ScriptExecutionError,
    ScriptNotConfiguredError,
    ScriptNotFoundError,
)


class TestClassification:
    """Test download failure categories."""

    def setup_method(self):
        self.manager = ErrorManager()

    def test_unsupported(self):
        error = Exception("ERROR: Unsupported URL: https://example.com/page")
        assert self.manager.classify(error) is FailureCategory.UNSUPPORTED

    def test_unavailable(self):
        error = Exception("ERROR: [youtube] abc: Video unavailable")
        assert self.manager.classify(error) is FailureCategory.UNAVAILABLE

    def test_network(self):
        assert self.manager.classify(ConnectionResetError()) is FailureCategory.NETWORK
        assert self.manager.classify(Exception("Unable to download webpage")) is FailureCategory.NETWORK

    def test_filesystem(self):
        assert self.manager.classify(PermissionError("denied")) is FailureCategory.FILESYSTEM
        assert self.manager.classify(OSError(errno.ENOSPC, "full")) is FailureCategory.FILESYSTEM
        error = Exception("ERROR: Postprocessing: ffprobe and ffmpeg not found")
        assert self.manager.classify(error) is FailureCategory.FILESYSTEM

    def test_unknown(self):
        assert self.manager.classify(ValueError("odd")) is FailureCategory.UNKNOWN


class TestMessages:
    """Test messages shown to users."""

    def setup_method(self):
        self.manager = ErrorManager()

    def test_categories_have_distinct_messages(self):
        errors = [
            Exception("Unsupported URL"),
            Exception("Private video"),
            TimeoutError("timed out"),
            PermissionError("denied"),
            ValueError("odd"),
        ]
        messages = {self.manager.to_user_message(error) for error in errors}
        assert len(messages) == len(errors)

    def test_unknown_message_includes_detail(self):
        message = self.manager.to_user_message(ValueError("weird `thing`"))
        assert "weird 'thing'" in message

    def test_script_failure_messages(self):
        assert "not configured" in self.manager.script_failure_message(ScriptNotConfiguredError("x"), "skip")
        assert "not found" in self.manager.script_failure_message(ScriptNotFoundError("x"), "skip")
        assert "Failed to skip" in self.manager.script_failure_message(ScriptExecutionError("x"), "skip")
