"""
Tests for the focus and online signal services.
"""

import pytest

from quarry import FocusManager, OnlineManager

from tests.utils import Recorder


@pytest.mark.unit
def test_focus_defaults_to_focused():
    """Without an override the process counts as focused"""
    manager = FocusManager()

    assert manager.is_focused()

    manager.set_focused(False)
    assert not manager.is_focused()

    manager.set_focused(None)
    assert manager.is_focused()


@pytest.mark.unit
def test_focus_changes_notify_listeners():
    """Listeners receive the new focus state; repeated values are ignored"""
    manager = FocusManager()
    recorder = Recorder()
    manager.subscribe(recorder)

    manager.set_focused(False)
    manager.set_focused(False)
    manager.set_focused(True)

    assert recorder.calls == [False, True]


@pytest.mark.unit
def test_focus_source_attached_lazily():
    """The event source is set up with the first listener and torn down with the last"""
    events = []
    handlers = []

    def setup(handle):
        events.append("setup")
        handlers.append(handle)
        return lambda: events.append("cleanup")

    manager = FocusManager(setup)
    assert events == []

    recorder = Recorder()
    unsubscribe = manager.subscribe(recorder)
    assert events == ["setup"]

    handlers[0](False)
    assert recorder.calls == [False]

    # A bare call re-announces the current state
    handlers[0]()
    assert recorder.calls == [False, False]

    unsubscribe()
    assert events == ["setup", "cleanup"]


@pytest.mark.unit
def test_replacing_focus_source_cleans_up_previous():
    """set_event_listener tears down the previous source first"""
    events = []
    manager = FocusManager()
    manager.subscribe(Recorder())

    manager.set_event_listener(lambda handle: lambda: events.append("first cleaned"))
    manager.set_event_listener(lambda handle: None)

    assert events == ["first cleaned"]


@pytest.mark.unit
def test_online_manager_tracks_connectivity():
    """set_online notifies only on change"""
    manager = OnlineManager()
    recorder = Recorder()
    manager.subscribe(recorder)

    assert manager.is_online()
    manager.set_online(False)
    manager.set_online(False)
    manager.set_online(True)

    assert recorder.calls == [False, True]


@pytest.mark.unit
def test_online_source_attached_lazily():
    """The connectivity source follows the listener count"""
    handlers = []
    manager = OnlineManager(lambda set_online: handlers.append(set_online) or (lambda: None))

    assert not manager.is_attached()
    unsubscribe = manager.subscribe(Recorder())
    assert manager.is_attached()

    handlers[0](False)
    assert not manager.is_online()

    unsubscribe()
    assert not manager.is_attached()
