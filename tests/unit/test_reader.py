"""Unit tests for the change feed reader."""

import threading
import time
from unittest.mock import Mock, call

import pytest

from avfeed.changefeed.checkpoint_store import TokenCheckpointStore
from avfeed.changefeed.classifier import ChangeKind
from avfeed.changefeed.errors import StoreError, TokenMismatchError, CheckpointError
from avfeed.changefeed.models import FeedMode, FeedPage, FeedStatus
from avfeed.changefeed.reader import (
    ChangeFeedReader, FeedReaderConfig, ReaderState, capture_current_token
)
from avfeed.changefeed.tokens import mint_start_token

from conftest import ok_page, change_record

ALL = FeedMode.ALL_VERSIONS_AND_DELETES


class TestFeedReaderConfig:
    """Test FeedReaderConfig."""

    def test_defaults(self):
        config = FeedReaderConfig()
        assert config.page_size_hint == 10
        assert config.poll_interval == 5.0

    def test_invalid_page_size_hint(self):
        with pytest.raises(ValueError, match="page_size_hint must be positive"):
            FeedReaderConfig(page_size_hint=0)

    def test_invalid_poll_interval(self):
        with pytest.raises(ValueError, match="poll_interval must be positive"):
            FeedReaderConfig(poll_interval=0)


class TestPoll:
    """Test one poll cycle."""

    def test_reports_events_in_page_order(self, scripted_store):
        records = [change_record("create", f"e{i}", i) for i in (1, 2, 3)]
        store = scripted_store([ok_page(records, "t1")])
        seen = []
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=seen.append)

        result = reader.poll()

        assert [c.document_id for c in seen] == ["e1", "e2", "e3"]
        assert result.count == 3
        assert result.pages == 1

    def test_order_preserved_across_pages(self, scripted_store):
        store = scripted_store([
            ok_page([change_record("create", "a", 1), change_record("replace", "a", 2)], "t1"),
            ok_page([change_record("delete", "a", 2, ttl_expired=True)], "t2"),
        ])
        seen = []
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=seen.append)

        result = reader.poll()

        assert [c.kind for c in seen] == [ChangeKind.CREATE, ChangeKind.REPLACE, ChangeKind.DELETE]
        assert result.count == 3
        assert result.pages == 2
        assert reader.token == "t2"

    def test_not_modified_reports_zero_and_fetches_once(self, scripted_store):
        store = scripted_store([FeedPage(status=FeedStatus.NOT_MODIFIED, next_token="t0")])
        reporter = Mock()
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=reporter)

        result = reader.poll()

        assert result.count == 0
        assert result.exhausted
        assert store.cursors[0].fetches == 1
        assert reader.state == ReaderState.EXHAUSTED
        reporter.assert_not_called()

    def test_opens_cursor_with_mode_token_and_page_size(self, scripted_store):
        store = scripted_store()
        reader = ChangeFeedReader(
            store, FeedMode.LATEST_VERSION, start_token="t0",
            config=FeedReaderConfig(page_size_hint=25)
        )
        reader.poll()
        assert store.opened == [{"mode": FeedMode.LATEST_VERSION, "start": "t0", "page_size_hint": 25}]

    def test_no_start_token_reads_from_now(self, scripted_store):
        store = scripted_store()
        ChangeFeedReader(store, ALL).poll()
        assert store.opened[0]["start"] is None

    def test_token_not_advanced_when_reporter_fails_mid_page(self, scripted_store):
        store = scripted_store([ok_page([change_record("create", "a", 1), change_record("create", "b", 2)], "t1")])
        reporter = Mock(side_effect=[None, RuntimeError("sink down")])
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=reporter)

        with pytest.raises(RuntimeError):
            reader.poll()

        assert reader.token == "t0"
        assert reader.events_processed == 0

    def test_store_error_keeps_last_drained_token(self, scripted_store):
        store = scripted_store([
            ok_page([change_record("create", "a", 1)], "t1"),
            StoreError("Request rate is large", status_code=429),
        ])
        seen = []
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=seen.append)

        with pytest.raises(StoreError) as exc_info:
            reader.poll()

        assert exc_info.value.status_code == 429
        assert reader.token == "t1"
        assert len(seen) == 1
        assert reader.state == ReaderState.IDLE

    def test_malformed_record_does_not_abort_page(self, scripted_store):
        store = scripted_store([ok_page([
            change_record("create", "a", 1),
            {"current": {"id": "x", "value": 1}},
            change_record("create", "b", 2),
        ], "t1")])
        seen = []
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=seen.append)

        result = reader.poll()

        assert result.count == 3
        assert [c.kind for c in seen] == [ChangeKind.CREATE, ChangeKind.UNKNOWN, ChangeKind.CREATE]
        assert reader.token == "t1"

    def test_read_once_returns_result(self, scripted_store):
        store = scripted_store([ok_page([change_record("create", "a", 1)], "t1")])
        result = ChangeFeedReader(store, ALL, start_token="t0", reporter=Mock()).read_once()
        assert result.count == 1
        assert result.token == "t1"


class TestStartToken:
    """Starting position resolution."""

    def test_token_for_other_container_rejected(self, scripted_store):
        token = mint_start_token("other=", 0)
        with pytest.raises(TokenMismatchError):
            ChangeFeedReader(scripted_store(), ALL, start_token=token, resource_id="mine=")

    def test_token_for_same_container_accepted(self, scripted_store):
        token = mint_start_token("mine=", 0)
        reader = ChangeFeedReader(scripted_store(), ALL, start_token=token, resource_id="mine=")
        assert reader.token == token

    def test_resumes_from_checkpoint(self, scripted_store):
        checkpoints = Mock(spec=TokenCheckpointStore)
        checkpoints.load_checkpoint.return_value = "saved"
        store = scripted_store()

        reader = ChangeFeedReader(store, ALL, checkpoint_store=checkpoints, feed_id="f1")
        reader.poll()

        checkpoints.load_checkpoint.assert_called_once_with("f1")
        assert store.opened[0]["start"] == "saved"

    def test_explicit_token_wins_over_checkpoint(self, scripted_store):
        checkpoints = Mock(spec=TokenCheckpointStore)
        reader = ChangeFeedReader(scripted_store(), ALL, start_token="t0", checkpoint_store=checkpoints)
        assert reader.token == "t0"
        checkpoints.load_checkpoint.assert_not_called()


class TestCheckpointing:
    """Post-page token persistence."""

    def test_checkpoint_saved_after_each_page(self, scripted_store):
        checkpoints = Mock(spec=TokenCheckpointStore)
        store = scripted_store([
            ok_page([change_record("create", "a", 1)], "t1"),
            ok_page([change_record("create", "b", 2), change_record("create", "c", 3)], "t2"),
        ])
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=Mock(),
                                  checkpoint_store=checkpoints, feed_id="f1")
        reader.poll()

        assert checkpoints.save_checkpoint.call_args_list == [
            call("f1", "t1", events_processed=1),
            call("f1", "t2", events_processed=3),
        ]

    def test_checkpoint_failure_does_not_stop_reading(self, scripted_store):
        checkpoints = Mock(spec=TokenCheckpointStore)
        checkpoints.save_checkpoint.side_effect = CheckpointError("disk full")
        store = scripted_store([ok_page([change_record("create", "a", 1)], "t1")])
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=Mock(), checkpoint_store=checkpoints)

        assert reader.poll().count == 1
        assert reader.token == "t1"


class TestContinuousRun:
    """Continuous mode."""

    def test_max_cycles_stops_loop(self, scripted_store):
        store = scripted_store([ok_page([change_record("create", "a", 1)], "t1")])
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=Mock(),
                                  config=FeedReaderConfig(poll_interval=0.01))

        total = reader.run(max_cycles=3, install_signal_handlers=False)

        assert total == 1
        assert len(store.opened) == 3
        assert [o["start"] for o in store.opened] == ["t0", "t1", "t1"]

    def test_stop_event_checked_between_cycles(self, scripted_store):
        stop = threading.Event()
        seen = []

        def reporter(change):
            seen.append(change)
            stop.set()

        store = scripted_store([ok_page([change_record("create", "a", 1), change_record("create", "b", 2)], "t1")])
        reader = ChangeFeedReader(store, ALL, start_token="t0", reporter=reporter)

        total = reader.run(stop_event=stop, install_signal_handlers=False)

        # The page is finished even though stop was requested on its first event
        assert total == 2
        assert len(seen) == 2
        assert len(store.opened) == 1

    def test_stop_method_sets_event(self, scripted_store):
        stop = threading.Event()
        store = scripted_store()
        reader = ChangeFeedReader(store, ALL, start_token="t0",
                                  config=FeedReaderConfig(poll_interval=0.01))
        thread = threading.Thread(
            target=reader.run, kwargs={"stop_event": stop, "install_signal_handlers": False}
        )
        thread.start()
        deadline = time.time() + 2
        while not store.opened and time.time() < deadline:
            time.sleep(0.005)
        reader.stop()
        thread.join(timeout=2)
        assert not thread.is_alive()
        assert stop.is_set()


class TestCaptureCurrentToken:
    """capture_current_token."""

    def test_returns_token_after_catching_up(self, scripted_store):
        store = scripted_store([
            ok_page([change_record("create", "a", 1)], "t1"),
            FeedPage(status=FeedStatus.NOT_MODIFIED, next_token="t2"),
        ])
        assert capture_current_token(store, ALL) == "t2"
        assert store.opened[0]["start"] is None
