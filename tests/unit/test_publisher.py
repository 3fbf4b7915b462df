import pytest
from unittest.mock import MagicMock
from abrpub.config.models import PublisherConfig
from abrpub.domain.events import PublishProgress, UploadSkipped
from abrpub.domain.models import AssetPathPolicy
from abrpub.pipeline.publisher import (
    PLAYLIST_CONTENT_TYPE,
    SEGMENT_CONTENT_TYPE,
    Publisher,
)


@pytest.fixture
def master(tmp_path):
    path = tmp_path / "playlist.m3u8"
    path.write_text("#EXTM3U\n#EXT-X-VERSION:3\n\n")
    return path


def _publisher(store, config, bus=None):
    return Publisher(store, config, event_bus=bus, policy=AssetPathPolicy(root="hls"), sleep=MagicMock())


def test_full_publish_layout(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "480p", 3, height=480), rendition_factory(tmp_path, "original-1080p", 3)]
    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert report.complete
    assert report.prefix == "hls/42/"
    assert len(report.uploaded) == 9
    assert set(store.objects) == {
        "hls/42/playlist.m3u8",
        "hls/42/480p/playlist.m3u8",
        "hls/42/480p/segment_000.ts",
        "hls/42/480p/segment_001.ts",
        "hls/42/480p/segment_002.ts",
        "hls/42/original-1080p/playlist.m3u8",
        "hls/42/original-1080p/segment_000.ts",
        "hls/42/original-1080p/segment_001.ts",
        "hls/42/original-1080p/segment_002.ts",
    }
    assert report.remote_segment_counts == {"480p": 3, "original-1080p": 3}
    assert report.bytes_uploaded > 0

def test_content_types_and_cache_control(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 1)]
    _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    segment = store.objects["hls/42/original-1080p/segment_000.ts"]
    assert segment["content_type"] == SEGMENT_CONTENT_TYPE
    assert segment["cache_control"] == "public, max-age=31536000, immutable"
    playlist = store.objects["hls/42/original-1080p/playlist.m3u8"]
    assert playlist["content_type"] == PLAYLIST_CONTENT_TYPE
    assert playlist["cache_control"] == "public, max-age=60"
    top = store.objects["hls/42/playlist.m3u8"]
    assert top["content_type"] == PLAYLIST_CONTENT_TYPE
    assert top["cache_control"] == "public, max-age=300"

def test_second_publish_uploads_nothing(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 5)]
    publisher = _publisher(store, fast_publisher_config)
    publisher.publish(outputs, master, "42")
    puts_after_first = len(store.put_calls)

    report = publisher.publish(outputs, master, "42")
    assert report.complete
    assert report.uploaded == []
    assert report.already_present == 7
    assert len(store.put_calls) == puts_after_first

def test_resume_uploads_only_missing_segments(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 1000)]
    for i in range(600):
        store.objects[f"hls/42/original-1080p/segment_{i:03d}.ts"] = {"body": b"x", "content_type": None,
                                                                      "cache_control": None}
    store.objects["hls/42/playlist.m3u8"] = {"body": b"x", "content_type": None, "cache_control": None}
    store.objects["hls/42/original-1080p/playlist.m3u8"] = {"body": b"x", "content_type": None,
                                                           "cache_control": None}

    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert len(report.uploaded) == 400
    assert len(store.put_calls) == 400
    assert all(int(k.rsplit("_", 1)[1][:-3]) >= 600 for k in store.put_calls)
    assert report.complete
    assert report.remote_segment_counts == {"original-1080p": 1000}

def test_transient_failures_are_retried(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 2)]
    store.fail("hls/42/original-1080p/segment_001.ts", times=3)

    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert report.complete
    assert report.skipped == []
    assert store.put_calls.count("hls/42/original-1080p/segment_001.ts") == 4

def test_exhausted_upload_is_skipped_and_reported(tmp_path, store, master, fast_publisher_config, rendition_factory):
    bus = MagicMock()
    outputs = [rendition_factory(tmp_path, "original-1080p", 3)]
    bad_key = "hls/42/original-1080p/segment_001.ts"
    store.fail(bad_key)

    report = _publisher(store, fast_publisher_config, bus).publish(outputs, master, "42")

    assert store.put_calls.count(bad_key) == 5
    assert report.skipped == [bad_key]
    assert report.missing == ["hls/42/playlist.m3u8", bad_key]
    assert not report.complete
    # the rest of the rendition still went up
    assert "hls/42/original-1080p/segment_002.ts" in store.objects
    assert report.remote_segment_counts == {"original-1080p": 2}
    skipped_events = [c[0][0] for c in bus.publish.call_args_list if isinstance(c[0][0], UploadSkipped)]
    assert [e.key for e in skipped_events] == [bad_key]

def test_listing_lag_is_confirmed_with_head(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 2)]
    store.hidden_from_listing.add("hls/42/original-1080p/segment_000.ts")

    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert report.complete
    assert report.missing == []

def test_batches_pause_between_groups(tmp_path, store, master, rendition_factory):
    config = PublisherConfig(batch_size=10, batch_delay_seconds=0.2,
                             backoff_initial_seconds=0.0, backoff_max_seconds=0.0)
    bus = MagicMock()
    publisher = _publisher(store, config, bus)
    outputs = [rendition_factory(tmp_path, "original-1080p", 25)]

    publisher.publish(outputs, master, "42")

    delays = [c for c in publisher._sleep.call_args_list if c[0][0] == 0.2]
    assert len(delays) == 2
    progress = [c[0][0] for c in bus.publish.call_args_list
                if isinstance(c[0][0], PublishProgress) and c[0][0].rendition == "original-1080p"]
    assert [(p.uploaded, p.total) for p in progress] == [(10, 25), (20, 25), (25, 25)]

def test_status_against_local_outputs(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "480p", 4, height=480), rendition_factory(tmp_path, "original-1080p", 4)]
    publisher = _publisher(store, fast_publisher_config)
    store.fail("hls/42/480p/segment_003.ts")
    publisher.publish(outputs, master, "42")

    status = publisher.status("42", outputs)
    assert not status.master_present
    by_name = {r.name: r for r in status.renditions}
    assert by_name["480p"].remote_segments == 3
    assert by_name["480p"].local_segments == 4
    assert not by_name["480p"].complete
    assert by_name["original-1080p"].complete
    assert not status.complete
    assert status.remote_segments == 7

def test_status_without_local_outputs(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-720p", 2, height=720)]
    publisher = _publisher(store, fast_publisher_config)
    publisher.publish(outputs, master, "7")

    status = publisher.status("7")
    assert [r.name for r in status.renditions] == ["original-720p"]
    assert status.renditions[0].local_segments is None
    assert status.complete

def test_status_of_unpublished_asset(store, fast_publisher_config):
    status = _publisher(store, fast_publisher_config).status("missing")
    assert not status.master_present
    assert status.renditions == []
    assert not status.complete

def test_master_withheld_when_rendition_playlist_fails(tmp_path, store, master, fast_publisher_config,
                                                       rendition_factory):
    outputs = [rendition_factory(tmp_path, "480p", 2, height=480), rendition_factory(tmp_path, "original-1080p", 2)]
    store.fail("hls/42/480p/playlist.m3u8")

    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert "hls/42/playlist.m3u8" not in store.objects
    assert "hls/42/playlist.m3u8" not in store.put_calls
    assert report.missing == ["hls/42/playlist.m3u8", "hls/42/480p/playlist.m3u8"]
    assert not report.complete
    assert "hls/42/original-1080p/playlist.m3u8" in store.objects

def test_master_uploaded_after_renditions(tmp_path, store, master, fast_publisher_config, rendition_factory):
    outputs = [rendition_factory(tmp_path, "480p", 2, height=480), rendition_factory(tmp_path, "original-1080p", 2)]

    _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert store.put_calls[-1] == "hls/42/playlist.m3u8"

def test_master_follows_once_missing_playlist_arrives(tmp_path, store, master, fast_publisher_config,
                                                      rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 2)]
    publisher = _publisher(store, fast_publisher_config)
    store.fail("hls/42/original-1080p/playlist.m3u8", times=fast_publisher_config.max_attempts)
    publisher.publish(outputs, master, "42")
    assert "hls/42/playlist.m3u8" not in store.objects

    report = publisher.publish(outputs, master, "42")

    assert report.complete
    assert report.uploaded == ["hls/42/original-1080p/playlist.m3u8", "hls/42/playlist.m3u8"]

def test_overwrite_replaces_stale_tree(tmp_path, store, master, fast_publisher_config, rendition_factory):
    publisher = _publisher(store, fast_publisher_config)
    old_master = tmp_path / "old.m3u8"
    old_master.write_text("#EXTM3U\nOLD\n")
    publisher.publish([rendition_factory(tmp_path / "old", "original-1080p", 2)], old_master, "42")

    master.write_text("#EXTM3U\n480p/playlist.m3u8\noriginal-1080p/playlist.m3u8\n")
    outputs = [rendition_factory(tmp_path, "480p", 2, height=480), rendition_factory(tmp_path, "original-1080p", 2)]
    report = publisher.publish(outputs, master, "42", overwrite=True)

    assert report.complete
    assert report.already_present == 0
    assert len(report.uploaded) == 7
    assert store.objects["hls/42/playlist.m3u8"]["body"] == master.read_bytes()

def test_without_overwrite_existing_master_is_kept(tmp_path, store, master, fast_publisher_config,
                                                   rendition_factory):
    store.objects["hls/42/playlist.m3u8"] = {"body": b"#EXTM3U\nOLD\n", "content_type": None,
                                             "cache_control": None}
    outputs = [rendition_factory(tmp_path, "original-1080p", 2)]

    report = _publisher(store, fast_publisher_config).publish(outputs, master, "42")

    assert report.complete
    assert store.objects["hls/42/playlist.m3u8"]["body"] == b"#EXTM3U\nOLD\n"
    assert "hls/42/playlist.m3u8" not in store.put_calls

def test_overwrite_reports_stale_copies_it_could_not_replace(tmp_path, store, master, fast_publisher_config,
                                                             rendition_factory):
    outputs = [rendition_factory(tmp_path, "original-1080p", 2)]
    publisher = _publisher(store, fast_publisher_config)
    publisher.publish(outputs, master, "42")
    store.fail("hls/42/original-1080p/segment_000.ts")

    report = publisher.publish(outputs, master, "42", overwrite=True)

    assert not report.complete
    assert report.missing == ["hls/42/playlist.m3u8", "hls/42/original-1080p/segment_000.ts"]
