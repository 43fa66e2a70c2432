import base64

import pytest

from procbroker.artifacts import ARTIFACT_PREFIX, TempArtifactManager, decode_image_payload
from procbroker.errors import BrokerError, ErrorKind


def test_acquire_writes_payload_and_release_deletes(tmp_path):
    manager = TempArtifactManager(tmp_path)
    path = manager.acquire(b"\x89PNG", owner="req-1")
    assert path.name.startswith(ARTIFACT_PREFIX)
    assert path.suffix == ".png"
    assert path.read_bytes() == b"\x89PNG"
    assert manager.owner_of(path) == "req-1"

    assert manager.release(path) is True
    assert not path.exists()
    assert manager.active == []


def test_release_of_missing_file_is_ok(tmp_path):
    manager = TempArtifactManager(tmp_path)
    path = manager.acquire(b"x", owner="req-1")
    path.unlink()
    assert manager.release(path) is True
    assert manager.active == []


def test_names_are_unique(tmp_path):
    manager = TempArtifactManager(tmp_path)
    paths = {manager.acquire(b"x", owner=f"req-{i}") for i in range(50)}
    assert len(paths) == 50
    assert manager.release_all() == 50
    assert list(tmp_path.iterdir()) == []


def test_scoped_removes_file_when_body_raises(tmp_path):
    manager = TempArtifactManager(tmp_path)
    seen = []
    with pytest.raises(RuntimeError):
        with manager.scoped(b"img", "req-1", suffix=".jpg") as path:
            seen.append(path)
            assert path.exists()
            raise RuntimeError("boom")
    assert seen[0].suffix == ".jpg"
    assert not seen[0].exists()


def test_scoped_without_payload_yields_none(tmp_path):
    manager = TempArtifactManager(tmp_path)
    with manager.scoped(None, "req-1") as path:
        assert path is None
    assert list(tmp_path.iterdir()) == []


def test_acquire_failure_is_artifact_io_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    manager = TempArtifactManager(blocker / "sub")
    with pytest.raises(BrokerError) as exc_info:
        manager.acquire(b"x", owner="req-1")
    assert exc_info.value.kind is ErrorKind.ARTIFACT_IO_FAILURE
    assert manager.active == []


def test_decode_data_url_keeps_suffix():
    encoded = base64.b64encode(b"jpegdata").decode("ascii")
    raw, suffix = decode_image_payload(f"data:image/jpeg;base64,{encoded}")
    assert raw == b"jpegdata"
    assert suffix == ".jpg"


def test_decode_plain_base64_and_bytes():
    raw, suffix = decode_image_payload(base64.b64encode(b"png").decode("ascii"))
    assert (raw, suffix) == (b"png", ".png")
    assert decode_image_payload(b"raw") == (b"raw", ".png")


@pytest.mark.parametrize("value", ["not base64 at all!", "", "data:image/png;base64,"])
def test_decode_rejects_bad_payloads(value):
    with pytest.raises(ValueError):
        decode_image_payload(value)
