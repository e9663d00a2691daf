"""
PDF page rendering through PyMuPDF.

Each page is rendered to PNG and described by its unrotated crop box size in
PDF points together with its rotation, which is what annotation coordinates
are expressed against.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import fitz  # PyMuPDF

from .errors import RenderError
from .models import PageDescriptor, PageSize

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPE = "image/png"


@dataclass
class RenderedPage:
    index: int
    image: bytes
    descriptor: PageDescriptor


class PageRenderer:
    def __init__(self, zoom: float = 2.0, max_dimension: int = 8000, unit: str = "pts") -> None:
        if zoom <= 0:
            raise ValueError(f"Zoom must be positive, got {zoom}")
        self.zoom = zoom
        self.max_dimension = max_dimension
        self.unit = unit

    def open(self, data: bytes) -> "RenderedDocument":
        try:
            document = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise RenderError(f"Cannot open document: {exc}") from exc
        return RenderedDocument(self, document)

    def effective_zoom(self, width: float, height: float) -> float:
        """Lower the zoom for pages whose render would exceed ``max_dimension`` pixels."""
        largest = max(width, height) * self.zoom
        if largest <= self.max_dimension:
            return self.zoom
        return self.zoom * self.max_dimension / largest


class RenderedDocument:
    """An open source document; use as a context manager."""

    def __init__(self, renderer: PageRenderer, document: fitz.Document) -> None:
        self.renderer = renderer
        self._document: Optional[fitz.Document] = document

    @property
    def page_count(self) -> int:
        return self._document.page_count

    def render(self, index: int) -> RenderedPage:
        try:
            page = self._document.load_page(index)
            box = page.cropbox
            width, height = float(box.width), float(box.height)
            if width <= 0 or height <= 0:
                raise RenderError(f"Page {index} has an empty crop box")

            zoom = self.renderer.effective_zoom(width, height)
            if zoom != self.renderer.zoom:
                logger.warning(f"Page {index} too large, zoom lowered: {self.renderer.zoom:.2f} -> {zoom:.2f}")
            pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            image = pixmap.tobytes("png")
        except (RuntimeError, ValueError, IndexError) as exc:
            raise RenderError(f"Cannot render page {index}: {exc}") from exc

        descriptor = PageDescriptor(
            rotation=page.rotation,
            size=PageSize(unit=self.renderer.unit, width=width, height=height),
        )
        return RenderedPage(index=index, image=image, descriptor=descriptor)

    def close(self) -> None:
        if self._document is not None:
            self._document.close()
            self._document = None

    def __enter__(self) -> "RenderedDocument":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
