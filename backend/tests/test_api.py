"""End-to-end tests for the HTTP surface, with a scripted engine."""

import os
from datetime import timedelta

from sqlmodel import select

from converter.db import new_session
from converter.errors import DuplicateJobError
from converter.main import content_disposition
from converter.models import ConvertRequest, Job, JobStatus, utcnow


def all_jobs(store):
    with new_session(store.engine) as session:
        return list(session.exec(select(Job)).all())


def upload(client, name="song.wav", content=b"RIFF" + b"\0" * 60, mime="audio/wav", **data):
    return client.post("/upload", files={"file": (name, content, mime)}, data=data)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestUpload:
    def test_accepted_upload_is_stored_as_uploaded(self, client, store):
        response = upload(client, userId="user-7")

        assert response.status_code == 201
        body = response.json()
        assert body["originalName"] == "song.wav"
        assert body["size"] == 64

        job = store.get(body["fileId"])
        assert job.status == JobStatus.UPLOADED
        assert job.conversion_id is None
        assert job.user_id == "user-7"
        assert os.path.getsize(job.stored_path) == 64

    def test_extension_alone_is_enough(self, client):
        response = upload(client, name="movie.MKV", mime="application/octet-stream")

        assert response.status_code == 201

    def test_mime_alone_is_enough(self, client):
        response = upload(client, name="recording", mime="audio/x-custom")

        assert response.status_code == 201

    def test_unsupported_file_is_rejected(self, client, store):
        response = upload(client, name="notes.txt", content=b"hello", mime="text/plain")

        assert response.status_code == 415
        assert "audio and video" in response.json()["error"]
        assert all_jobs(store) == []

    def test_missing_file(self, client):
        response = client.post("/upload", data={"userId": "someone"})

        assert response.status_code == 400
        assert response.json() == {"error": "No file provided"}

    def test_bytes_removed_when_record_cannot_be_created(self, client, store, settings, monkeypatch):
        def refuse(job):
            raise DuplicateJobError(f"Job {job.id} already exists")

        monkeypatch.setattr(store, "create", refuse)

        response = upload(client)

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert os.listdir(settings.upload_dir) == []

    def test_oversize_upload_is_rejected_and_discarded(self, client, store, settings):
        settings.MAX_UPLOAD_BYTES = 10

        response = upload(client, content=b"x" * 11)

        assert response.status_code == 413
        assert all_jobs(store) == []
        assert os.listdir(settings.upload_dir) == []


class TestConversion:
    def test_round_trip(self, client):
        file_id = upload(client).json()["fileId"]

        response = client.post(f"/convert/{file_id}", json={"format": "mp3", "quality": "high"})
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Conversion started"
        assert body["trim"] is False
        conversion_id = body["conversionId"]

        status = client.get(f"/status/{conversion_id}").json()
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["outputFilename"] == "song.mp3"
        assert status["completedAt"] is not None
        assert status["error"] is None

        download = client.get(f"/download/{conversion_id}")
        assert download.status_code == 200
        assert download.headers["content-disposition"] == 'attachment; filename="song.mp3"'
        assert download.content.startswith(b"converted:")

    def test_timestamps_carry_utc_offset(self, client):
        file_id = upload(client).json()["fileId"]
        conversion_id = client.post(f"/convert/{file_id}").json()["conversionId"]

        status = client.get(f"/status/{conversion_id}").json()

        assert status["startedAt"].endswith("+00:00")
        assert status["completedAt"].endswith("+00:00")

    def test_defaults_without_body(self, client):
        file_id = upload(client).json()["fileId"]

        body = client.post(f"/convert/{file_id}").json()

        assert body["format"] == "mp3"
        assert body["quality"] == "high"

    def test_trim(self, client, recorder):
        file_id = upload(client, name="clip.mp4", mime="video/mp4").json()["fileId"]

        body = client.post(
            f"/convert/{file_id}", json={"trim": True, "startTime": 2, "endTime": 5}
        ).json()

        assert body["message"] == "Audio trimming started"
        assert (body["startTime"], body["endTime"]) == (2, 5)
        status = client.get(f"/status/{body['conversionId']}").json()
        assert status["outputFilename"].endswith("_trimmed.mp3")
        params = recorder.engines[0].params
        assert (params.start, params.end) == (2, 5)

    def test_unknown_file(self, client):
        response = client.post("/convert/nope", json={})

        assert response.status_code == 404

    def test_unknown_file_wins_over_bad_parameters(self, client):
        response = client.post("/convert/nope", json={"format": "docx"})

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}

    def test_invalid_format(self, client):
        file_id = upload(client).json()["fileId"]

        response = client.post(f"/convert/{file_id}", json={"format": "docx"})

        assert response.status_code == 400
        assert "Unsupported format" in response.json()["error"]

    def test_convert_while_processing_is_rejected(self, client, dispatcher):
        file_id = upload(client).json()["fileId"]
        first = dispatcher.start(file_id, ConvertRequest())

        response = client.post(f"/convert/{file_id}", json={"format": "wav"})

        assert response.status_code == 409
        status = client.get(f"/status/{first.conversion_id}").json()
        assert status["status"] == "processing"
        assert status["format"] == "mp3"

    def test_convert_after_completion_is_rejected(self, client):
        file_id = upload(client).json()["fileId"]
        client.post(f"/convert/{file_id}")

        response = client.post(f"/convert/{file_id}")

        assert response.status_code == 409


class TestStatusAndDownload:
    def test_unknown_conversion(self, client):
        assert client.get("/status/nope").status_code == 404
        assert client.get("/download/nope").status_code == 404

    def test_download_before_completion(self, client, dispatcher):
        file_id = upload(client).json()["fileId"]
        job = dispatcher.start(file_id, ConvertRequest())

        status = client.get(f"/status/{job.conversion_id}").json()
        response = client.get(f"/download/{job.conversion_id}")

        assert status["status"] == "processing"
        assert status["progress"] == 20
        assert response.status_code == 400
        assert response.json() == {"error": "Conversion not completed"}

    def test_failed_conversion_is_visible_through_status(self, client, recorder):
        recorder.engine_kwargs["fail"] = "Invalid data found when processing input"
        file_id = upload(client).json()["fileId"]

        conversion_id = client.post(f"/convert/{file_id}").json()["conversionId"]

        status = client.get(f"/status/{conversion_id}").json()
        assert status["status"] == "failed"
        assert status["error"] == "Invalid data found when processing input"
        assert client.get(f"/download/{conversion_id}").status_code == 400

    def test_missing_output_file(self, client, store):
        file_id = upload(client).json()["fileId"]
        conversion_id = client.post(f"/convert/{file_id}").json()["conversionId"]
        os.remove(store.get(file_id).output_path)

        response = client.get(f"/download/{conversion_id}")

        assert response.status_code == 404
        assert response.json() == {"error": "Converted file not found"}


def test_retention_purges_finished_jobs(client, store, settings):
    file_id = upload(client).json()["fileId"]
    client.post(f"/convert/{file_id}")
    job = store.get(file_id)

    def age(record):
        record.completed_at = utcnow() - timedelta(days=1)

    store.update(file_id, age)
    settings.JOB_RETENTION_SECONDS = 60

    upload(client)

    assert store.get(file_id) is None
    assert not os.path.exists(job.output_path)
    assert not os.path.exists(job.stored_path)


class TestContentDisposition:
    def test_name_with_spaces_keeps_quoted_filename(self, client):
        file_id = upload(client, name="My Song.wav").json()["fileId"]
        conversion_id = client.post(f"/convert/{file_id}").json()["conversionId"]

        response = client.get(f"/download/{conversion_id}")

        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="My Song.mp3"'

    def test_non_ascii_name_adds_extended_filename(self):
        assert content_disposition("Café (live).mp3") == (
            'attachment; filename="Caf? (live).mp3"; '
            "filename*=utf-8''Caf%C3%A9%20%28live%29.mp3"
        )

    def test_quotes_and_backslashes_are_escaped(self):
        assert content_disposition('a"b\\c.mp3') == 'attachment; filename="a\\"b\\\\c.mp3"'
