"""
PDF Export Service
Renders populated packet content to a branded PDF and stores it.

Layout: cover page, table of contents, then one section per top-level content
key (the metadata key is skipped). The rendered bytes are parsed back with
pypdf before the artifact is written, and the URL is returned only once the
storage backend has confirmed the write.
"""
import io
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from app.models.packet import packet_type_display_name
from app.services.packet_storage import (
    ArtifactNotFoundError,
    PacketStorage,
    PacketStorageError,
)

logger = logging.getLogger(__name__)

BRAND_COLOR = "#14b8a6"
AUTHOR = "Afya Performance"
MARGIN = 72
DISCLAIMER = (
    "Please consult with a healthcare provider before starting any new exercise "
    "or nutrition program."
)
WELCOME = (
    "This personalized plan has been created specifically for you based on your goals, "
    "preferences, and current fitness level."
)


class PDFExportError(Exception):
    """Raised when a packet cannot be rendered to a valid PDF"""
    pass


def format_section_title(key: str) -> str:
    """camelCase / snake_case key -> 'Title Case' heading"""
    spaced = re.sub(r"([A-Z])", r" \1", key).replace("_", " ").strip()
    spaced = " ".join(spaced.split())
    return spaced[:1].upper() + spaced[1:]


class _PdfWriter:
    """Cursor-based text layout on a reportlab canvas."""

    def __init__(self, buffer: io.BytesIO, metadata: Dict[str, Any]):
        self.c = canvas.Canvas(buffer, pagesize=letter)
        self.width, self.height = letter
        self.y = self.height - MARGIN
        self.c.setTitle(metadata.get("title", ""))
        self.c.setAuthor(metadata.get("author", AUTHOR))
        self.c.setSubject(metadata.get("subject", ""))
        self.c.setKeywords(", ".join(metadata.get("keywords", [])))
        self.c.setCreator(f"{AUTHOR} System")

    def new_page(self):
        self.c.showPage()
        self.y = self.height - MARGIN

    def ensure_space(self, needed: float):
        if self.y - needed < MARGIN:
            self.new_page()

    def text(self, value: str, font: str = "Helvetica", size: int = 11,
             color: str = "#333333", indent: float = 0, gap: float = 4):
        max_width = self.width - 2 * MARGIN - indent
        lines = simpleSplit(str(value), font, size, max_width) or [""]
        leading = size * 1.35
        self.c.setFont(font, size)
        self.c.setFillColor(HexColor(color))
        for line in lines:
            self.ensure_space(leading)
            self.c.setFont(font, size)
            self.c.setFillColor(HexColor(color))
            self.c.drawString(MARGIN + indent, self.y - size, line)
            self.y -= leading
        self.y -= gap

    def header(self, title: str, color: str):
        self.ensure_space(40)
        self.c.setFont("Helvetica-Bold", 18)
        self.c.setFillColor(HexColor(color))
        self.c.drawString(MARGIN, self.y - 18, title)
        text_width = self.c.stringWidth(title, "Helvetica-Bold", 18)
        self.c.setStrokeColor(HexColor(color))
        self.c.setLineWidth(2)
        self.c.line(MARGIN, self.y - 22, MARGIN + text_width, self.y - 22)
        self.y -= 36

    def save(self):
        self.c.save()


class PDFExportService:
    """Renders packets with reportlab and hands the bytes to a PacketStorage backend."""

    def __init__(self, storage: PacketStorage, brand_color: str = BRAND_COLOR):
        self.storage = storage
        self.brand_color = brand_color

    def generate_pdf(
        self,
        packet_id: str,
        content: Dict[str, Any],
        client_name: str,
        packet_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Render content to PDF and store it.

        Returns:
            URL of the stored artifact

        Raises:
            PDFExportError: content could not be rendered
            PacketStorageError: artifact could not be written
        """
        type_name = packet_type_display_name(packet_type)
        info = {
            "title": f"{type_name} Plan - {client_name}",
            "author": AUTHOR,
            "subject": f"Personalized {type_name} Plan",
            "keywords": [str(packet_type), "fitness", "nutrition", "training"],
        }
        info.update(metadata or {})

        data = self.render(content, client_name, packet_type, info)
        self._verify(data, packet_id)

        filename = f"packet-{packet_id}-{int(time.time() * 1000)}.pdf"
        pdf_url = self.storage.save(f"{packet_id}/{filename}", data)
        logger.info(f"PDF generated for packet {packet_id}: {pdf_url} ({len(data)} bytes)")
        return pdf_url

    def render(self, content: Dict[str, Any], client_name: str, packet_type: str,
               info: Dict[str, Any]) -> bytes:
        if not isinstance(content, dict):
            raise PDFExportError("Packet content must be a mapping of sections")
        buffer = io.BytesIO()
        try:
            pdf = _PdfWriter(buffer, info)
            self._cover_page(pdf, client_name, packet_type)
            self._table_of_contents(pdf, content)
            for key, value in content.items():
                if key == "metadata":
                    continue
                self._section(pdf, key, value)
            pdf.save()
        except PDFExportError:
            raise
        except Exception as e:
            logger.error(f"PDF rendering failed: {e}", exc_info=True)
            raise PDFExportError(f"PDF rendering failed: {e}") from e
        return buffer.getvalue()

    def _verify(self, data: bytes, packet_id: str) -> None:
        try:
            page_count = len(PdfReader(io.BytesIO(data)).pages)
        except (PdfReadError, ValueError) as e:
            raise PDFExportError(f"Rendered PDF for packet {packet_id} is unreadable: {e}") from e
        if page_count < 1:
            raise PDFExportError(f"Rendered PDF for packet {packet_id} has no pages")

    def _cover_page(self, pdf: _PdfWriter, client_name: str, packet_type: str):
        c = pdf.c
        c.setFillColor(HexColor(self.brand_color))
        c.rect(0, pdf.height - 120, pdf.width, 120, stroke=0, fill=1)
        c.setFillColor(HexColor("#ffffff"))
        c.setFont("Helvetica-Bold", 32)
        c.drawCentredString(pdf.width / 2, pdf.height - 65, AUTHOR)
        c.setFont("Helvetica", 24)
        c.drawCentredString(pdf.width / 2, pdf.height - 100, f"{packet_type_display_name(packet_type)} Plan")

        c.setFillColor(HexColor("#000000"))
        c.setFont("Helvetica-Bold", 20)
        c.drawCentredString(pdf.width / 2, pdf.height - 210, f"Prepared for: {client_name}")
        c.setFillColor(HexColor("#666666"))
        c.setFont("Helvetica", 14)
        c.drawCentredString(pdf.width / 2, pdf.height - 240, datetime.now(timezone.utc).strftime("%B %d, %Y"))

        pdf.y = pdf.height - 300
        pdf.text(WELCOME, size=12)
        c.setFillColor(HexColor("#999999"))
        c.setFont("Helvetica", 10)
        for i, line in enumerate(simpleSplit(DISCLAIMER, "Helvetica", 10, pdf.width - 2 * MARGIN)):
            c.drawCentredString(pdf.width / 2, 120 - i * 13, line)
        pdf.new_page()

    def _table_of_contents(self, pdf: _PdfWriter, content: Dict[str, Any]):
        pdf.header("Table of Contents", self.brand_color)
        sections = [format_section_title(k) for k in content.keys() if k != "metadata"]
        for index, title in enumerate(sections, start=1):
            pdf.text(f"{index}. {title}", size=12, gap=6)
        pdf.new_page()

    def _section(self, pdf: _PdfWriter, key: str, value: Any):
        pdf.ensure_space(150)
        pdf.header(format_section_title(key), self.brand_color)
        self._value(pdf, value, indent=0)
        pdf.y -= 18

    def _value(self, pdf: _PdfWriter, value: Any, indent: float):
        if isinstance(value, dict):
            for k, v in value.items():
                label = format_section_title(k)
                if isinstance(v, (dict, list)):
                    pdf.text(label, font="Helvetica-Bold", size=12, color="#555555", indent=indent)
                    self._value(pdf, v, indent + 12)
                else:
                    pdf.text(f"{label}: {v}", size=11, indent=indent)
        elif isinstance(value, list):
            for index, item in enumerate(value, start=1):
                if isinstance(item, dict):
                    pdf.text(f"#{index}", font="Helvetica-Bold", size=10, color=self.brand_color,
                             indent=indent + 10, gap=2)
                    self._value(pdf, item, indent + 10)
                else:
                    pdf.text(f"• {item}", size=11, indent=indent + 18, gap=3)
        elif value is not None:
            pdf.text(str(value), size=11, indent=indent)

    def read_pdf(self, pdf_url: str) -> bytes:
        """Artifact bytes. Raises ArtifactNotFoundError if it is gone."""
        return self.storage.read(pdf_url)

    def pdf_exists(self, pdf_url: Optional[str]) -> bool:
        if not pdf_url:
            return False
        try:
            return self.storage.exists(pdf_url)
        except PacketStorageError as e:
            logger.warning(f"Could not check artifact {pdf_url}: {e}")
            return False

    def delete_pdf(self, pdf_url: Optional[str]) -> bool:
        """Best-effort delete. Never raises; returns True if the artifact was removed."""
        if not pdf_url:
            return False
        try:
            self.storage.delete(pdf_url)
            return True
        except ArtifactNotFoundError:
            logger.info(f"PDF already absent: {pdf_url}")
            return False
        except Exception as e:
            logger.warning(f"Failed to delete PDF {pdf_url}: {e}")
            return False

    @staticmethod
    def sections(content: Dict[str, Any]) -> List[str]:
        """Headings in table-of-contents order."""
        return [format_section_title(k) for k in content.keys() if k != "metadata"]
