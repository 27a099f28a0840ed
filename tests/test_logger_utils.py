"""
Tests for ColoredLogger levels, prefixes and sinks
"""
import sys

from dab_runner.logger_utils import ColoredLogger


class TestColoredLogger:

    def test_tagged_line_reaches_sink_uncolored(self, log_lines, capsys):
        ColoredLogger.log("Acc1", "hello", "SUCCESS")

        level, text = log_lines[-1]
        assert level == "SUCCESS"
        assert "[Acc1] [SUCCESS] hello" in text
        assert "\x1b[" not in text
        assert "\x1b[" in capsys.readouterr().out

    def test_console_stream_can_leave_stdout_to_control_lines(self, capsys):
        ColoredLogger.set_console_stream(sys.stderr)
        ColoredLogger.log("Acc1", "to stderr")
        ColoredLogger.log_separator("banner")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "to stderr" in captured.err
        assert "banner" in captured.err

    def test_bracketed_tag_kept_as_is(self, log_lines):
        ColoredLogger.log("[Main]", "x")
        assert "[Main] [INFO] x" in log_lines[-1][1]
        assert "[[Main]]" not in log_lines[-1][1]

    def test_empty_tag_logs_status(self, log_lines):
        ColoredLogger.log(None, "process line")
        assert log_lines[-1][1].endswith("[INFO] process line")

    def test_threshold(self, log_lines):
        ColoredLogger.set_level("warn")
        ColoredLogger.log_status("quiet", "INFO")
        ColoredLogger.log_status("loud", "WARNING")
        assert [t.split("] ", 1)[1] for _, t in log_lines] == ["[WARNING] loud"]

        ColoredLogger.set_level("debug")
        ColoredLogger.log("S", "detail", "DEBUG")
        assert log_lines[-1][0] == "DEBUG"

        ColoredLogger.set_level("nonsense")
        assert ColoredLogger.is_enabled_for("INFO")
        assert not ColoredLogger.is_enabled_for("DEBUG")

    def test_failing_sink_does_not_break_logging(self, log_lines):
        def broken(level, text):
            raise RuntimeError("sink down")

        ColoredLogger.add_sink(broken)
        ColoredLogger.log_status("still here")
        assert log_lines[-1][1].endswith("still here")

    def test_file_logging_strips_colors(self, tmp_path, monkeypatch):
        log_file = tmp_path / "run.log"
        monkeypatch.setattr(ColoredLogger, "_file_logger", None)
        ColoredLogger.enable_file_logging(str(log_file))
        try:
            ColoredLogger.log("Acc1", "to file", "ERROR")
            for handler in ColoredLogger._file_logger.handlers:
                handler.flush()
            content = log_file.read_text(encoding="utf-8")
        finally:
            for handler in list(ColoredLogger._file_logger.handlers):
                handler.close()
                ColoredLogger._file_logger.removeHandler(handler)

        assert "[Acc1] [ERROR] to file" in content
        assert "\x1b[" not in content
