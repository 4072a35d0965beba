import check_queue_status


def test_prints_counts_for_default_queue(fake_redis, capsys):
    assert check_queue_status.main(["check_queue_status.py"], client=fake_redis) == 0

    out = capsys.readouterr().out
    assert "Queue invoice-import:" in out
    assert "Waiting: 0" in out
    assert "Dead letter queue: 0 job(s)" in out
    assert fake_redis.closed


def test_unreachable_redis_exits_with_error(broken_redis, capsys):
    assert check_queue_status.main(["check_queue_status.py"], client=broken_redis) == 1
    assert "Cannot reach Redis" in capsys.readouterr().out


def test_unknown_queue(capsys):
    assert check_queue_status.main(["check_queue_status.py", "nope"]) == 2
    assert "Unknown queue(s): nope" in capsys.readouterr().out
