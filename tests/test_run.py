from duplicord.common.events import LogEvent, Severity
from duplicord.server.errors import ItemOperationFailed
from duplicord.server.run import RunState


def test_item_failed_counts_and_warns():
    seen = []
    st = RunState("r1", seen.append)

    failure = ItemOperationFailed("delete", "channel", "old-chat", RuntimeError("Missing Access"))
    entry = st.item_failed(failure.message)

    assert st.item_failures == 1
    assert entry.severity is Severity.WARNING
    assert entry.message == "Failed to delete channel old-chat: Missing Access"
    assert st.logs == [entry]
    assert isinstance(seen[-1], LogEvent) and seen[-1].message == entry.message


def test_item_failures_accumulate_in_describe():
    st = RunState("r1")
    st.item_failed("a")
    st.item_failed("b")
    assert st.describe()["itemFailures"] == 2
