"""
Unit tests for PDFExportService and the packet storage backends
"""
import io
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError
from pypdf import PdfReader

from app.services.packet_storage import (
    ArtifactNotFoundError,
    BlobPacketStorage,
    PacketStorageError,
)
from app.services.pdf_export_service import PDFExportError, PDFExportService, format_section_title

CONTENT = {
    "nutritionOverview": ["This nutrition plan is designed for your goal of strength."],
    "dailyTargets": {"calories": 2400, "macros": {"protein": 150, "fat": 70}},
    "mealIdeas": [{"name": "Oats", "calories": 350}, {"name": "Chicken and rice", "calories": 600}],
    "metadata": {"packetType": "NUTRITION"},
}


@pytest.fixture
def export(storage):
    return PDFExportService(storage)


class TestGeneratePdf:

    def test_pdf_is_stored_and_readable(self, export, storage):
        url = export.generate_pdf("pkt-1", CONTENT, "Jane Doe", "NUTRITION")

        assert url.startswith("/packets/pkt-1/packet-pkt-1-")
        assert url.endswith(".pdf")
        reader = PdfReader(io.BytesIO(storage.read(url)))
        # Cover, table of contents, sections
        assert len(reader.pages) >= 3
        assert reader.metadata.title == "Nutrition Plan - Jane Doe"

    def test_metadata_overrides(self, export, storage):
        url = export.generate_pdf("pkt-1", CONTENT, "Jane Doe", "NUTRITION", metadata={"subject": "Custom"})
        assert PdfReader(io.BytesIO(storage.read(url))).metadata.subject == "Custom"

    def test_long_content_flows_onto_more_pages(self, export, storage):
        content = {"overview": [f"Paragraph {i} " * 20 for i in range(120)]}
        url = export.generate_pdf("pkt-2", content, "Jane Doe", "WORKOUT")
        assert len(PdfReader(io.BytesIO(storage.read(url))).pages) > 3

    def test_non_mapping_content_is_rejected(self, export, storage):
        with pytest.raises(PDFExportError):
            export.generate_pdf("pkt-1", ["not", "sections"], "Jane Doe", "NUTRITION")
        assert list(storage.base_path.rglob("*.pdf")) == []

    def test_storage_failure_propagates(self, storage):
        failing = MagicMock(wraps=storage)
        failing.save.side_effect = PacketStorageError("disk full")
        with pytest.raises(PacketStorageError):
            PDFExportService(failing).generate_pdf("pkt-1", CONTENT, "Jane Doe", "NUTRITION")


class TestArtifactHelpers:

    def test_delete_pdf(self, export):
        url = export.generate_pdf("pkt-1", CONTENT, "Jane Doe", "NUTRITION")
        assert export.pdf_exists(url) is True
        assert export.delete_pdf(url) is True
        assert export.pdf_exists(url) is False

    def test_delete_missing_pdf_returns_false(self, export):
        assert export.delete_pdf("/packets/pkt-1/gone.pdf") is False
        assert export.delete_pdf(None) is False

    def test_read_missing_pdf(self, export):
        with pytest.raises(ArtifactNotFoundError):
            export.read_pdf("/packets/pkt-1/gone.pdf")

    @pytest.mark.parametrize("key, title", [
        ("weeklyTargets", "Weekly Targets"),
        ("howCoachingWorks", "How Coaching Works"),
        ("daily_habits", "Daily habits"),
        ("overview", "Overview"),
    ])
    def test_format_section_title(self, key, title):
        assert format_section_title(key) == title

    def test_sections_skip_metadata(self):
        assert PDFExportService.sections(CONTENT) == ["Nutrition Overview", "Daily Targets", "Meal Ideas"]


class TestLocalStorage:

    def test_urls_outside_prefix_are_rejected(self, storage):
        with pytest.raises(ArtifactNotFoundError):
            storage.read("/elsewhere/file.pdf")

    def test_path_traversal_is_rejected(self, storage):
        with pytest.raises(ArtifactNotFoundError):
            storage.read("/packets/../../etc/passwd")
        assert storage.exists("/packets/../../etc/passwd") is False

    def test_save_rejects_escaping_key(self, storage):
        with pytest.raises(PacketStorageError) as exc_info:
            storage.save("../outside.pdf", b"%PDF")
        assert exc_info.value.transient is False

    def test_save_leaves_no_temp_file(self, storage):
        storage.save("pkt-1/a.pdf", b"%PDF-1.4")
        assert sorted(p.name for p in storage.base_path.rglob("*")) == ["a.pdf", "pkt-1"]


class TestBlobStorage:

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def blob_storage(self, sleeps):
        blob = BlobPacketStorage(
            storage_account_url="https://acct.blob.core.windows.net",
            container_name="packets",
            max_retries=3,
            retry_base_seconds=0.5,
            sleep=sleeps.append,
        )
        blob._blob_service_client = MagicMock()
        return blob

    def _blob_client(self, blob_storage):
        return blob_storage._blob_service_client.get_blob_client.return_value

    def test_transient_upload_failure_is_retried(self, blob_storage, sleeps):
        client = self._blob_client(blob_storage)
        client.upload_blob.side_effect = [ServiceRequestError("connection reset"), None]
        client.url = "https://acct.blob.core.windows.net/packets/pkt-1/a.pdf"

        url = blob_storage.save("pkt-1/a.pdf", b"%PDF")

        assert url == client.url
        assert client.upload_blob.call_count == 2
        assert sleeps == [0.5]
        client.get_blob_properties.assert_called_once()

    def test_gives_up_after_max_retries(self, blob_storage, sleeps):
        error = HttpResponseError(message="service unavailable")
        error.status_code = 503
        self._blob_client(blob_storage).upload_blob.side_effect = error

        with pytest.raises(PacketStorageError) as exc_info:
            blob_storage.save("pkt-1/a.pdf", b"%PDF")

        assert exc_info.value.transient is True
        assert sleeps == [0.5, 1.0]

    def test_client_error_is_not_retried(self, blob_storage, sleeps):
        error = HttpResponseError(message="bad request")
        error.status_code = 400
        self._blob_client(blob_storage).upload_blob.side_effect = error

        with pytest.raises(PacketStorageError) as exc_info:
            blob_storage.save("pkt-1/a.pdf", b"%PDF")

        assert exc_info.value.transient is False
        assert sleeps == []

    def test_missing_blob(self, blob_storage):
        self._blob_client(blob_storage).download_blob.side_effect = ResourceNotFoundError("gone")

        with pytest.raises(ArtifactNotFoundError):
            blob_storage.read("https://acct.blob.core.windows.net/packets/pkt-1/a.pdf")
        assert blob_storage.exists("pkt-1/a.pdf") is True

    def test_url_from_other_container_is_rejected(self, blob_storage):
        with pytest.raises(ArtifactNotFoundError):
            blob_storage.read("https://acct.blob.core.windows.net/other/pkt-1/a.pdf")

    def test_blob_name_from_url(self, blob_storage):
        blob_storage.read("https://acct.blob.core.windows.net/packets/pkt-1/a.pdf")
        blob_storage._blob_service_client.get_blob_client.assert_called_with(
            container="packets", blob="pkt-1/a.pdf"
        )
