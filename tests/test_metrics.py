from backend.app.metrics import RequestWindow


class TestRequestWindow:

    def test_counts_requests_and_server_errors(self):
        window = RequestWindow()

        for status_code in (200, 201, 404, 500, 503):
            window.add(status_code)

        assert window.count() == 5
        assert window.error_count() == 2

    def test_old_requests_fall_out_of_the_window(self, monkeypatch):
        clock = iter([100.0, 100.5, 200.0, 200.0])
        monkeypatch.setattr("backend.app.metrics.time.perf_counter", lambda: next(clock))
        window = RequestWindow(window_seconds=60)

        window.add(500)

        assert window.count() == 0
        assert window.error_count() == 0
