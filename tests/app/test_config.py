# tests/app/test_config.py
import pytest
from pydantic import ValidationError

from sensor_spool.config.models import SpoolModel, StorageModel, UploadModel
from sensor_spool.net.transport import Endpoint


def test_defaults():
    m = SpoolModel()
    assert m.user_id == "test"
    assert m.storage.max_segment_bytes == 1024**3
    assert m.storage.rotation_interval_s == 3600.0
    assert m.storage.buffer_bytes == 8192
    assert m.upload.max_retries == 3 and m.upload.retry_delay_s == 3.0
    assert m.upload.partial_receipt_codes == [404, 500]
    assert m.upload.endpoint() is None
    assert m.dispatch.overflow == "execute_inline"


def test_directory_expands_user_and_vars(monkeypatch):
    monkeypatch.setenv("SPOOL_ROOT", "/data")
    monkeypatch.setenv("HOME", "/home/me")
    assert StorageModel(directory="$SPOOL_ROOT/spool").directory == "/data/spool"
    assert StorageModel(directory="~/spool").directory == "/home/me/spool"


def test_upload_endpoint_is_validated():
    assert UploadModel(host="10.0.0.2", port=9000).endpoint() == Endpoint("10.0.0.2", 9000)
    with pytest.raises(ValidationError):
        UploadModel(host="10.0.0.2", port=70000)
    with pytest.raises(ValidationError):
        UploadModel(host="my-server", port=80)


@pytest.mark.parametrize(
    "raw",
    [
        {"storage": {"max_segment_bytes": 0}},
        {"storage": {"rotation_interval_s": -1}},
        {"dispatch": {"workers": 3}},
        {"dispatch": {"overflow": "drop"}},
        {"log": {"level": "TRACE"}},
        {"surprise": True},
    ],
)
def test_invalid_configs(raw):
    with pytest.raises(ValidationError):
        SpoolModel.model_validate(raw)


def test_json_round_trip():
    m = SpoolModel.model_validate_json('{"run_id": "r", "storage": {"compress": false}}')
    assert m.run_id == "r" and m.storage.compress is False
