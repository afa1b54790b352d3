from heatmap_loss.utils.logging_utils import ProgressLogger, format_hh_mm_ss, timed, timed_func


def test_format_hh_mm_ss():
    assert format_hh_mm_ss(0) == '00:00:00'
    assert format_hh_mm_ss(3725) == '01:02:05'


def test_progress_logger_logs_every_n():
    progress = ProgressLogger(desc='fit', total=10, log_every=0.5)
    logged = [progress.log_progress() for _ in range(10)]
    assert logged == [False] * 4 + [True] + [False] * 4 + [True]
    assert progress.completed == 10


def test_timed_passes_through():
    @timed_func
    def add(a, b):
        return a + b

    with timed(label='add'):
        assert add(1, 2) == 3
