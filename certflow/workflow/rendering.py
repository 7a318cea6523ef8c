"""
Document renderer collaborators.

The engine only depends on :class:`DocumentRenderer`. ``stamp_signature`` is
the extension point where a real digital-signature scheme would plug in; the
shipped :class:`PdfDocumentRenderer` draws a visual stamp only.

Implementation
    - reportlab renders the certificate page and the signature overlay.
    - pypdf merges the overlay onto the prior document's page.
    - Pillow normalises uploaded images (JPEG/PNG, with or without alpha).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Mapping, Optional

from PIL import Image
from pypdf import PdfReader, PdfWriter
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .schemas import Position, Template


@dataclass
class TemplateAssets:
    """Image bytes referenced by a template, resolved from the artifact store."""

    background: Optional[bytes] = None
    logos: List[Optional[bytes]] = field(default_factory=list)


class DocumentRenderer(ABC):
    """External collaborator that produces document bytes."""

    @abstractmethod
    def render_document(
        self,
        template: Template,
        fields: Mapping[str, str],
        assets: TemplateAssets,
    ) -> bytes:
        """Render an unsigned certificate for one subject."""

    @abstractmethod
    def stamp_signature(
        self,
        prior: bytes,
        signature: bytes,
        position: Position,
    ) -> bytes:
        """Return ``prior`` with ``signature`` drawn at ``position``."""


DEFAULT_LAYOUT: Dict[str, Any] = {
    "title": "Certificate of Completion",
    "organization": "the Training Centre",
    "signatories": [
        {"name": "First Signatory", "lines": ["Authorised Signatory"]},
        {"name": "Second Signatory", "lines": ["Executive Director"]},
    ],
}

# Logo slots in millimetres from the top-left corner: (x, y, width, height)
LOGO_SLOTS_MM = [
    (49.5, 20.0, 37.0, 30.0),
    ((297.0 - 40.0) / 2, 20.0, 40.0, 30.0),
    (217.5, 20.0, 35.0, 28.0),
]


def _image_reader(data: bytes, keep_alpha: bool) -> ImageReader:
    image = Image.open(BytesIO(data))
    image = image.convert("RGBA" if keep_alpha else "RGB")
    return ImageReader(image)


class PdfDocumentRenderer(DocumentRenderer):
    """Landscape A4 certificate renderer."""

    def __init__(self, pagesize=landscape(A4)):
        self.pagesize = pagesize

    def _top(self, y_mm: float) -> float:
        """Convert a distance from the top edge (mm) to reportlab's y (points)."""
        return self.pagesize[1] - y_mm * mm

    def render_document(
        self,
        template: Template,
        fields: Mapping[str, str],
        assets: TemplateAssets,
    ) -> bytes:
        layout = {**DEFAULT_LAYOUT, **(template.layout or {})}
        width, height = self.pagesize
        buf = BytesIO()
        # invariant=1 drops timestamps and random ids from the output
        c = canvas.Canvas(buf, pagesize=self.pagesize, invariant=1)

        if assets.background:
            c.drawImage(_image_reader(assets.background, keep_alpha=False), 0, 0,
                        width=width, height=height)

        for slot, logo in zip(LOGO_SLOTS_MM, assets.logos):
            if not logo:
                continue
            x, y, w, h = slot
            c.drawImage(_image_reader(logo, keep_alpha=True), x * mm, self._top(y + h),
                        width=w * mm, height=h * mm, mask="auto")

        name = fields.get("Name", "")
        course = fields.get("Course", "")

        c.setFont("Helvetica-Bold", 24)
        c.drawCentredString(155.5 * mm, self._top(80), str(layout["title"]))

        c.setFont("Helvetica", 16)
        c.drawCentredString(
            155.5 * mm, self._top(90),
            f"This is to certify that {name} has successfully completed the",
        )
        c.drawCentredString(
            155.5 * mm, self._top(97),
            f"{course} course from {layout['organization']}",
        )

        c.setFont("Helvetica-Bold", 16)
        c.drawCentredString(148.5 * mm, self._top(110), course)
        c.drawCentredString(
            148.5 * mm, self._top(130),
            f"Duration: {fields.get('From', '')} to {fields.get('To', '')}",
        )

        signatories = list(layout.get("signatories") or [])
        if signatories:
            self._signatory_block(c, signatories[0], x_mm=30.0, centred=False)
        if len(signatories) > 1:
            self._signatory_block(c, signatories[1], x_mm=239.5, centred=True)

        c.showPage()
        c.save()
        return buf.getvalue()

    def _signatory_block(self, c, signatory: Mapping[str, Any], x_mm: float, centred: bool) -> None:
        draw = c.drawCentredString if centred else c.drawString
        c.setFont("Helvetica-Bold", 16)
        draw(x_mm * mm, self._top(160), str(signatory.get("name", "")))
        c.setFont("Helvetica", 12)
        for offset, line in enumerate(signatory.get("lines", [])[:2]):
            draw(x_mm * mm, self._top(166 + 6 * offset), str(line))

    @staticmethod
    def _make_overlay(page_w: float, page_h: float, signature: bytes, position: Position) -> bytes:
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=(page_w, page_h), invariant=1)
        x = position.x
        if position.align == "right":
            x = page_w - position.width - position.x
        c.drawImage(_image_reader(signature, keep_alpha=True), x, position.y,
                    width=position.width, height=position.height, mask="auto")
        c.save()
        return buf.getvalue()

    def stamp_signature(self, prior: bytes, signature: bytes, position: Position) -> bytes:
        reader = PdfReader(BytesIO(prior))
        if position.page_index >= len(reader.pages):
            raise ValueError(
                f"Page {position.page_index} does not exist; document has {len(reader.pages)}"
            )
        writer = PdfWriter()
        for i, page in enumerate(reader.pages):
            if i == position.page_index:
                box = page.mediabox
                overlay_pdf = self._make_overlay(float(box.width), float(box.height), signature, position)
                page.merge_page(PdfReader(BytesIO(overlay_pdf)).pages[0])
            writer.add_page(page)

        out = BytesIO()
        writer.write(out)
        return out.getvalue()
