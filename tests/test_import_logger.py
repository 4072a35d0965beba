from services.import_logger import ImportLogger, MAX_LOGS, empty_stats, format_duration


def test_logs_newest_first_and_capped(fake_redis):
    log = ImportLogger(fake_redis)
    for i in range(MAX_LOGS + 5):
        log.info(f"message {i}")

    logs = log.get_logs(1000)
    assert len(logs) == MAX_LOGS
    assert logs[0]["message"] == f"message {MAX_LOGS + 4}"
    assert logs[0]["level"] == "info"


def test_clear_logs_leaves_a_marker(fake_redis):
    log = ImportLogger(fake_redis)
    log.warning("something odd")
    log.clear_logs()

    assert [entry["message"] for entry in log.get_logs()] == ["Import logs cleared"]


def test_run_updates_stats_and_last_run(fake_redis):
    log = ImportLogger(fake_redis)
    assert log.get_stats() == empty_stats()

    run = log.start_run()
    assert log.get_last_run()["status"] == "running"

    log.end_run(run, {"scanned": 3, "queued": 2, "duplicates": 1, "skipped": 0, "errors": []})
    log.end_run(log.start_run(), {"scanned": 1, "queued": 0, "errors": [{"fileName": "bad.pdf", "error": "boom"}]})

    stats = log.get_stats()
    assert stats["totalScans"] == 2
    assert stats["totalFilesProcessed"] == 2
    assert stats["totalFailed"] == 1
    assert log.get_last_run()["status"] == "completed"
    assert any("bad.pdf: boom" in entry["message"] for entry in log.get_logs())


def test_redis_errors_are_swallowed(broken_redis):
    log = ImportLogger(broken_redis)
    log.error("still works")

    assert log.get_logs() == []
    assert log.get_last_run() is None


def test_format_duration():
    assert format_duration(1500) == "1.5 seconds"
    assert format_duration(90000) == "1.5 minutes"
