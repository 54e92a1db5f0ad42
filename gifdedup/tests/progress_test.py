import io
import threading

from rich.console import Console

from gifdedup.progress import ProgressReporter, _format_eta


def test_format_eta():
    assert _format_eta(None) == "--"
    assert _format_eta(float("inf")) == "--"
    assert _format_eta(42) == "42s"
    assert _format_eta(125) == "2m 05s"
    assert _format_eta(3 * 3600 + 7 * 60) == "3h 07m"


def test_disabled_reporter_still_counts_and_quits():
    event = threading.Event()
    reporter = ProgressReporter(enable_dash=False, quit_event=event)
    reporter.start()
    reporter.start_stage("fingerprinting", total=3)
    reporter.advance(2)
    reporter.inc("excluded")
    reporter.inc("excluded")
    reporter.add_log("something odd", "warning")
    assert reporter.stage_done == 2
    assert reporter.counters == {"excluded": 2}
    assert reporter.recent_logs()[-1][:2] == ("WARNING", "something odd")
    assert not reporter.should_quit()
    reporter.request_quit()
    assert event.is_set() and reporter.should_quit()
    reporter.stop()


def test_dashboard_renders_to_console():
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    reporter = ProgressReporter(enable_dash=True, console=console, banner="Workers: 2")
    reporter.start()
    reporter.start_stage("matching", total=4)
    reporter.advance()
    reporter.inc("matches")
    reporter.flush()
    reporter.stop("Scan complete")
    out = buf.getvalue()
    assert "MATCHING" in out
    assert "Scan complete" in out
