# export_engine/tests/test_writers_and_storage.py

import calendar
import csv
import json
import os
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError
from openpyxl import load_workbook

from export_engine.exports.events import (
    ExportCompleted,
    LoggingEventPublisher,
    RedisEventPublisher,
    safe_publish,
)
from export_engine.exports.exceptions import TransientIOError
from export_engine.exports.storage import (
    LocalFileStore,
    S3FileStore,
    build_artifact_key,
    cleanup_old_temp_files,
    create_temp_file_path,
)
from export_engine.exports.value_objects import ExportFormat, ExportId
from export_engine.exports.writers import (
    CsvExportWriter,
    ExcelExportWriter,
    get_writer,
    serialize_value,
)
from export_engine.utils.retry import RetryConfig, call_with_retry
from export_engine.utils.s3_utils import S3Utils

EXPORT_ID = ExportId("0e8a5c9a-1f7b-4c38-9e1b-3b0c8e5d2a11")


class TestWriters:

    def test_writer_selected_by_format(self, tmp_path):
        assert isinstance(get_writer(ExportFormat.CSV, str(tmp_path / "a.csv")), CsvExportWriter)
        assert isinstance(get_writer(ExportFormat.EXCEL, str(tmp_path / "a.xlsx")), ExcelExportWriter)

    def test_serialize_value(self):
        assert serialize_value(None) == ""
        assert serialize_value(True) == "Yes"
        assert serialize_value(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05"
        assert serialize_value(Decimal("1.10")) == "1.10"
        assert serialize_value({"a": 1}) == '{"a": 1}'

    def test_csv_writer_streams_batches(self, tmp_path):
        path = tmp_path / "out.csv"
        writer = CsvExportWriter(str(path))
        writer.open(["id", "name"], {"id": "ID", "name": "Name"})
        writer.write_batch([{"id": 1, "name": "Zoë", "ignored": "x"}])
        writer.write_batch([{"id": 2, "name": None}])
        writer.close()

        raw = path.read_bytes()
        assert raw.startswith(b"\xef\xbb\xbf")
        with open(path, newline="", encoding="utf-8-sig") as f:
            assert list(csv.reader(f)) == [["ID", "Name"], ["1", "Zoë"], ["2", ""]]
        assert writer.rows_written == 2

    def test_excel_writer_rolls_over_to_new_sheet(self, tmp_path):
        path = tmp_path / "out.xlsx"
        writer = ExcelExportWriter(str(path), max_rows_per_sheet=2)
        writer.open(["id", "amount"], {"id": "ID", "amount": "Amount"})
        writer.write_batch([{"id": i, "amount": Decimal("2.5")} for i in range(1, 6)])
        writer.close()

        workbook = load_workbook(path, read_only=True)
        assert workbook.sheetnames == ["Export", "Export 2", "Export 3"]
        first = [list(row) for row in workbook["Export"].iter_rows(values_only=True)]
        assert first == [["ID", "Amount"], [1, 2.5], [2, 2.5]]
        last = [list(row) for row in workbook["Export 3"].iter_rows(values_only=True)]
        assert last == [["ID", "Amount"], [5, 2.5]]


class TestLocalFileStore:

    def test_put_moves_file_under_root(self, tmp_path):
        store = LocalFileStore(str(tmp_path / "store"), "http://files", "secret")
        temp = create_temp_file_path(str(tmp_path / "work"), EXPORT_ID, ExportFormat.CSV, "run-1")
        with open(temp, "w") as f:
            f.write("ID\n")

        key = build_artifact_key(EXPORT_ID, ExportFormat.CSV, datetime(2026, 1, 15, 12, 0, 0))
        stored = store.put(temp, key, "text/csv")

        assert stored == f"final/export_{EXPORT_ID}_2026-01-15_12-00-00.csv"
        assert store.exists(stored)
        store.delete(stored)
        assert not store.exists(stored)
        store.delete(stored)

    def test_rejects_paths_outside_root(self, tmp_path):
        store = LocalFileStore(str(tmp_path / "store"), "http://files", "secret")
        with pytest.raises(ValueError):
            store.exists("../outside.csv")

    def test_signature_expires(self, tmp_path):
        store = LocalFileStore(str(tmp_path / "store"), "http://files", "secret")
        signature = store._signature("final/a.csv", 1000)
        assert store.verify_signature("final/a.csv", 1000, signature, now=999)
        assert not store.verify_signature("final/a.csv", 1000, signature, now=1001)
        assert not store.verify_signature("final/b.csv", 1000, signature, now=999)

    def test_signed_url_expiry_follows_given_time(self, tmp_path):
        store = LocalFileStore(str(tmp_path / "store"), "http://files", "secret")
        now = datetime(2026, 1, 15, 12, 0, 0)

        url = urlparse(store.signed_url("final/a.csv", 600, now=now))

        query = parse_qs(url.query)
        expires = int(query["expires"][0])
        assert expires == calendar.timegm(now.utctimetuple()) + 600
        assert store.verify_signature("final/a.csv", expires, query["signature"][0], now=expires - 1)

    def test_put_failure_is_transient(self, tmp_path):
        store = LocalFileStore(str(tmp_path / "store"), "http://files", "secret")
        with pytest.raises(TransientIOError):
            store.put(str(tmp_path / "missing.csv"), "final/a.csv")


class TestTempFiles:

    def test_temp_paths_are_unique_per_run(self, tmp_path):
        first = create_temp_file_path(str(tmp_path), EXPORT_ID, ExportFormat.CSV, "run-1")
        second = create_temp_file_path(str(tmp_path), EXPORT_ID, ExportFormat.CSV, "run-2")
        assert first != second
        assert os.path.basename(first).startswith(f"temp_export_{EXPORT_ID}_")

    def test_cleanup_removes_only_old_temp_files(self, tmp_path):
        now = datetime(2026, 1, 15, 12, 0, 0)
        old = create_temp_file_path(str(tmp_path), EXPORT_ID, ExportFormat.CSV, "old")
        fresh = create_temp_file_path(str(tmp_path), EXPORT_ID, ExportFormat.CSV, "fresh")
        unrelated = tmp_path / "temp" / "keep.txt"
        for path in (old, fresh, unrelated):
            with open(path, "w") as f:
                f.write("ID\n")

        now_ts = calendar.timegm(now.utctimetuple())
        os.utime(old, (now_ts - 25 * 3600, now_ts - 25 * 3600))
        os.utime(fresh, (now_ts - 3600, now_ts - 3600))
        os.utime(unrelated, (now_ts - 48 * 3600, now_ts - 48 * 3600))

        removed = cleanup_old_temp_files(str(tmp_path), max_age_hours=24, now=now)

        assert removed == [os.path.basename(old)]
        assert not os.path.exists(old)
        assert os.path.exists(fresh)
        assert unrelated.exists()

    def test_cleanup_without_temp_directory(self, tmp_path):
        assert cleanup_old_temp_files(str(tmp_path / "nothing"), max_age_hours=24) == []


class TestS3FileStore:

    def test_put_uploads_under_prefix(self, tmp_path):
        temp = tmp_path / "a.csv"
        temp.write_text("ID\n")
        s3 = MagicMock()
        s3.upload_local_file.return_value = True

        stored = S3FileStore(s3).put(str(temp), "final/a.csv", "text/csv")

        assert stored == "exports/final/a.csv"
        s3.upload_local_file.assert_called_once_with(str(temp), "exports/final/a.csv", content_type="text/csv")
        assert not temp.exists()

    def test_upload_failure_is_transient(self, tmp_path):
        s3 = MagicMock()
        s3.upload_local_file.return_value = False
        with pytest.raises(TransientIOError):
            S3FileStore(s3).put(str(tmp_path / "a.csv"), "final/a.csv")

    def test_signed_url_uses_presigned_url(self):
        s3 = MagicMock()
        s3.generate_presigned_url.return_value = "https://bucket/exports/final/a.csv?sig"
        assert S3FileStore(s3).signed_url("exports/final/a.csv", 600) == "https://bucket/exports/final/a.csv?sig"
        s3.generate_presigned_url.assert_called_once_with("exports/final/a.csv", expiration=600)

    def test_s3_utils_file_exists(self):
        client = MagicMock()
        utils = S3Utils(s3_client=client, bucket_name="bucket")
        assert utils.file_exists("a.csv")

        client.head_object.side_effect = ClientError({"Error": {"Code": "404"}}, "HeadObject")
        assert not utils.file_exists("a.csv")

        client.head_object.side_effect = ClientError({"Error": {"Code": "403"}}, "HeadObject")
        with pytest.raises(ClientError):
            utils.file_exists("a.csv")


class TestRetry:

    def test_backoff_is_capped(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 5:
                raise TransientIOError("busy")
            return "ok"

        config = RetryConfig(max_attempts=5, initial_delay=1.0, backoff_factor=3.0, max_delay=5.0,
                             retriable_exceptions=(TransientIOError,))
        with patch("time.sleep") as sleep:
            assert call_with_retry(flaky, config) == "ok"
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 3.0, 5.0, 5.0]

    def test_gives_up_after_max_attempts(self):
        calls = []

        def down():
            calls.append(1)
            raise TransientIOError("still down")

        config = RetryConfig(max_attempts=3, retriable_exceptions=(TransientIOError,))
        with patch("time.sleep"):
            with pytest.raises(TransientIOError, match="still down"):
                call_with_retry(down, config)
        assert len(calls) == 3

    def test_non_retriable_errors_propagate_immediately(self):
        calls = []

        def boom():
            calls.append(1)
            raise KeyError("nope")

        config = RetryConfig(retriable_exceptions=(TransientIOError,))
        with patch("time.sleep") as sleep:
            with pytest.raises(KeyError):
                call_with_retry(boom, config)
        assert len(calls) == 1
        sleep.assert_not_called()

    @pytest.mark.parametrize("kwargs", [
        dict(max_attempts=0),
        dict(initial_delay=-1),
        dict(backoff_factor=0.5),
        dict(initial_delay=10, max_delay=1),
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestEventPublishers:

    def _event(self):
        return ExportCompleted(
            export_id=str(EXPORT_ID),
            occurred_at=datetime(2026, 1, 15, 12, 0, 0),
            file_path="final/a.csv",
            file_size=10,
            records_exported=3,
        )

    def test_redis_publisher_sends_json(self):
        client = MagicMock()
        RedisEventPublisher(client, "exports.events").publish(self._event())

        channel, payload = client.publish.call_args.args
        assert channel == "exports.events"
        data = json.loads(payload)
        assert data["event"] == "ExportCompleted"
        assert data["records_exported"] == 3
        assert data["occurred_at"] == "2026-01-15T12:00:00"

    def test_redis_failures_are_swallowed(self):
        client = MagicMock()
        client.publish.side_effect = ConnectionError("redis down")
        RedisEventPublisher(client).publish(self._event())

    def test_safe_publish_ignores_publisher_errors(self):
        publisher = MagicMock()
        publisher.publish.side_effect = RuntimeError("bad publisher")
        safe_publish(publisher, self._event())
        safe_publish(None, self._event())

    def test_logging_publisher(self):
        with patch("export_engine.exports.events.logger") as logger:
            LoggingEventPublisher().publish(self._event())
        args, kwargs = logger.info.call_args
        assert args == ("Export event: ExportCompleted",)
        assert kwargs["export_id"] == str(EXPORT_ID)
        assert "event" not in kwargs
