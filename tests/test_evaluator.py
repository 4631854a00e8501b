import pytest

from db_copy.evaluator import evaluate


def tok(n):
    return n.to_bytes(8, "big")


def scan(n_rows, n_changed, stored=1000):
    """n_rows control rows; the first n_changed carry tokens newer than `stored`."""
    rows = []
    for i in range(n_rows):
        token = tok(stored + 1 + i) if i < n_changed else tok(stored - 1 - (i % stored))
        rows.append((n_rows - i, token))
    return rows


def test_no_changes_is_incremental_zero_percent():
    report = evaluate(scan(100, 0), tok(1000), 0, 100, 40.0)
    assert report.change_percent == 0
    assert report.source_changed == 0
    assert report.use_truncate is False


@pytest.mark.parametrize("changed,expected", [(399, False), (400, False), (401, True)])
def test_threshold_boundary(changed, expected):
    report = evaluate(scan(1000, changed), tok(1000), 0, 1000, 40.0)
    assert report.source_changed == changed
    assert report.use_truncate is expected


def test_target_changes_count_towards_the_share():
    report = evaluate(scan(1000, 300), tok(1000), 101, 1000, 40.0)
    assert report.change_percent == pytest.approx(40.1)
    assert report.use_truncate is True


def test_missing_stored_source_token_marks_everything_changed():
    report = evaluate(scan(10, 0), None, 0, 10, 40.0)
    assert report.source_changed == 10
    assert report.use_truncate is True


def test_excess_rows_force_truncate():
    report = evaluate(scan(100, 0), tok(1000), 0, 150, 40.0)
    assert report.excess_percent == pytest.approx(50.0)
    assert report.use_truncate is True


def test_excess_threshold_is_tunable():
    report = evaluate(scan(100, 0), tok(1000), 0, 150, 40.0, excess_threshold_percent=60.0)
    assert report.use_truncate is False


def test_empty_control_scan_never_divides():
    report = evaluate([], tok(1000), 5, 50, 40.0)
    assert report.change_percent == 0
    assert report.excess_percent == 0
    assert report.use_truncate is False
