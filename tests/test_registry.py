import threading

import pytest

from runbox.core.models import Execution, Session, Status
from runbox.services.registry import SessionRegistry


def _execution(run_id="r1"):
    return Execution(run_id=run_id, language="python", container=f"runbox-s1-{run_id}")


def test_missing_session_is_none_not_placeholder():
    reg = SessionRegistry()
    assert reg.get("s1") is None
    assert reg.update("s1", language="c") is None
    assert "s1" not in reg


def test_insert_update_delete():
    reg = SessionRegistry()
    reg.insert(Session(id="s1", language="python"))
    with pytest.raises(ValueError):
        reg.insert(Session(id="s1", language="python"))

    assert reg.update("s1", language="cpp").language == "cpp"
    with pytest.raises(AttributeError):
        reg.update("s1", nonsense=1)

    removed = reg.delete("s1")
    assert removed.status is Status.CLOSED
    assert reg.delete("s1") is None
    assert len(reg) == 0


def test_attach_refuses_second_execution():
    reg = SessionRegistry()
    reg.insert(Session(id="s1", language="python"))
    first, second = _execution("r1"), _execution("r2")

    assert reg.attach("s1", first)
    assert not reg.attach("s1", second)
    assert reg.get("s1").execution is first
    assert reg.get("s1").status is Status.LAUNCHING
    assert not reg.attach("missing", second)


def test_release_only_matches_the_given_execution():
    reg = SessionRegistry()
    reg.insert(Session(id="s1", language="python"))
    current = _execution("r1")
    reg.attach("s1", current)

    assert reg.release("s1", _execution("stale")) is None
    assert reg.mark("s1", current, Status.RUNNING)
    assert reg.get("s1").status is Status.RUNNING
    assert reg.release("s1", current) is current
    assert reg.release("s1", current) is None
    assert reg.get("s1").status is Status.IDLE
    assert not reg.mark("s1", current, Status.RUNNING)


def test_concurrent_release_has_exactly_one_winner():
    reg = SessionRegistry()
    reg.insert(Session(id="s1", language="python"))
    reg.attach("s1", _execution())
    barrier = threading.Barrier(8)
    wins = []

    def worker():
        barrier.wait()
        if reg.release("s1") is not None:
            wins.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert wins == [1]
    assert "s1" in reg
