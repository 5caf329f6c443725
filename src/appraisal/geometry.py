from __future__ import annotations

import io
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import fitz
from PIL import Image
from pypdf import PdfReader
from pypdf.generic import ContentStream

from .regions import BoundingBox, RawImageRegion, filter_regions
from .registry import env_float

logger = logging.getLogger(__name__)

Matrix = tuple[float, float, float, float, float, float]

IDENTITY: Matrix = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)
RESOURCE_GAP = 50.0
MAX_FORM_DEPTH = 8


@dataclass(frozen=True)
class PaintHit:
    kind: str
    name: str | None
    matrix: Matrix


@dataclass(frozen=True)
class TextRun:
    text: str
    x: float
    y: float


@dataclass
class PageExtraction:
    page_number: int
    width: float
    height: float
    regions: list[RawImageRegion] = field(default_factory=list)
    text_runs: list[TextRun] = field(default_factory=list)


def multiply(m1: Sequence[float], m2: Sequence[float]) -> Matrix:
    """Compose two affine matrices so that ``m2`` is applied before ``m1``."""

    return (
        m1[0] * m2[0] + m1[2] * m2[1],
        m1[1] * m2[0] + m1[3] * m2[1],
        m1[0] * m2[2] + m1[2] * m2[3],
        m1[1] * m2[2] + m1[3] * m2[3],
        m1[0] * m2[4] + m1[2] * m2[5] + m1[4],
        m1[1] * m2[4] + m1[3] * m2[5] + m1[5],
    )


def bbox_from_matrix(
    matrix: Sequence[float], page_height: float, origin: tuple[float, float] = (0.0, 0.0)
) -> BoundingBox:
    """Map the unit square through ``matrix`` and flip it into top-left page space."""

    a, b, c, d, e, f = matrix
    corners = [(a * u + c * v + e, b * u + d * v + f) for u, v in ((0, 0), (1, 0), (0, 1), (1, 1))]
    xs = [point[0] for point in corners]
    ys = [point[1] for point in corners]
    left, bottom = origin
    return BoundingBox(
        x=min(xs) - left,
        y=(bottom + page_height) - max(ys),
        width=max(xs) - min(xs),
        height=max(ys) - min(ys),
    )


def _operator_name(operator: Any) -> str:
    if isinstance(operator, bytes):
        return operator.decode("latin-1")
    return str(operator)


@dataclass(frozen=True)
class FormContent:
    """The content of a Form XObject, ready to be walked in place of its ``Do``."""

    matrix: Matrix
    operations: Sequence[tuple[Sequence[Any], Any]]
    xobject_kinds: Mapping[str, str]
    open_form: Callable[[str], FormContent | None] | None = None


def walk_paint_operations(
    operations: Iterable[tuple[Sequence[Any], Any]],
    xobject_kinds: Mapping[str, str],
    *,
    open_form: Callable[[str], FormContent | None] | None = None,
    start: Matrix = IDENTITY,
    depth: int = 0,
) -> Iterator[PaintHit]:
    """Yield every image painted by ``operations`` with the matrix in force at the time.

    A ``Do`` naming a form is walked into when ``open_form`` can load it, with the form's
    ``/Matrix`` applied on top of the current matrix. Otherwise the form is reported as
    a single hit.
    """

    stack: list[Matrix] = []
    current = start
    for operands, operator in operations:
        op = _operator_name(operator)
        if op == "q":
            stack.append(current)
        elif op == "Q":
            if stack:
                current = stack.pop()
        elif op == "cm":
            if len(operands) != 6:
                logger.debug("Ignoring cm with %s operands", len(operands))
                continue
            try:
                current = multiply(current, [float(value) for value in operands])
            except (TypeError, ValueError):
                logger.debug("Ignoring cm with non-numeric operands")
        elif op == "Do":
            if not operands:
                continue
            name = str(operands[0])
            kind = xobject_kinds.get(name)
            if kind is None:
                continue
            form = None
            if kind == "form" and open_form is not None:
                if depth >= MAX_FORM_DEPTH:
                    logger.warning("Not descending into form %s past depth %s", name, depth)
                else:
                    form = open_form(name)
            if form is None:
                yield PaintHit(kind=kind, name=name, matrix=current)
                continue
            yield from walk_paint_operations(
                form.operations,
                form.xobject_kinds,
                open_form=form.open_form,
                start=multiply(current, form.matrix),
                depth=depth + 1,
            )
        elif op in ("BI", "INLINE IMAGE"):
            yield PaintHit(kind="inline", name=None, matrix=current)


def synthesize_resource_boxes(
    sizes: Sequence[tuple[float, float]], page_width: float
) -> list[BoundingBox]:
    """Lay unplaced images out two per row without overlap.

    The second column starts at half the page width, or after the first image when
    that one is wider. Each row starts below the tallest image of the previous row.
    """

    boxes: list[BoundingBox] = []
    row_top = 0.0
    for start in range(0, len(sizes), 2):
        row = sizes[start : start + 2]
        x = 0.0
        for width, height in row:
            boxes.append(BoundingBox(x=x, y=row_top, width=float(width), height=float(height)))
            x = max(page_width / 2, x + float(width) + RESOURCE_GAP)
        row_top += max(float(height) for _, height in row) + RESOURCE_GAP
    return boxes


def _resolve(value: Any) -> Any:
    if value is not None and hasattr(value, "get_object"):
        return value.get_object()
    return value


def _xobjects(owner: Any) -> dict[str, Any]:
    """Return the XObject table of a page or form, or ``{}`` when it has none."""

    resources = _resolve(owner.get("/Resources"))
    if not resources:
        return {}
    xobjects = _resolve(resources.get("/XObject"))
    if not xobjects:
        return {}
    return {str(name): _resolve(value) for name, value in xobjects.items()}


def _kinds(xobjects: Mapping[str, Any]) -> dict[str, str]:
    kinds: dict[str, str] = {}
    for name, xobject in xobjects.items():
        subtype = str(xobject.get("/Subtype", ""))
        if subtype == "/Image":
            kinds[name] = "image_mask" if xobject.get("/ImageMask") else "image"
        elif subtype == "/Form":
            kinds[name] = "form"
    return kinds


def _form_matrix(xobject: Any) -> Matrix:
    raw = _resolve(xobject.get("/Matrix"))
    if not raw or len(raw) != 6:
        return IDENTITY
    try:
        a, b, c, d, e, f = (float(_resolve(value)) for value in raw)
    except (TypeError, ValueError):
        return IDENTITY
    return (a, b, c, d, e, f)


def form_opener(xobjects: Mapping[str, Any], pdf: Any) -> Callable[[str], FormContent | None]:
    """Build the ``open_form`` callback for a resource table.

    A form without its own ``/Resources`` inherits the table it was painted from.
    """

    def _open(name: str) -> FormContent | None:
        xobject = xobjects.get(name)
        if xobject is None or str(xobject.get("/Subtype", "")) != "/Form":
            return None
        nested = _xobjects(xobject) if xobject.get("/Resources") is not None else dict(xobjects)
        try:
            operations = ContentStream(xobject, pdf).operations
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not read form %s: %s", name, exc)
            return None
        return FormContent(
            matrix=_form_matrix(xobject),
            operations=operations,
            xobject_kinds=_kinds(nested),
            open_form=form_opener(nested, pdf),
        )

    return _open


def resource_image_sizes(page: Any) -> list[tuple[float, float]]:
    sizes = []
    for xobject in _xobjects(page).values():
        if str(xobject.get("/Subtype", "")) != "/Image":
            continue
        width = _resolve(xobject.get("/Width", 0))
        height = _resolve(xobject.get("/Height", 0))
        sizes.append((float(width), float(height)))
    return sizes


def render_scale() -> float:
    return env_float("APPRAISAL_RENDER_SCALE", 1.5)


class PageRenderer:
    """Renders a page once and crops regions out of the cached raster."""

    def __init__(self, page: fitz.Page, scale: float | None = None) -> None:
        self._page = page
        self._scale = render_scale() if scale is None else scale
        self._image: Image.Image | None = None

    def _raster(self) -> Image.Image:
        if self._image is None:
            pixmap = self._page.get_pixmap(matrix=fitz.Matrix(self._scale, self._scale), alpha=False)
            self._image = Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)
        return self._image

    def crop(self, box: BoundingBox) -> bytes:
        image = self._raster()
        left = max(0, int(box.x * self._scale))
        top = max(0, int(box.y * self._scale))
        right = min(image.width, int((box.x + box.width) * self._scale))
        lower = min(image.height, int((box.y + box.height) * self._scale))
        if right <= left or lower <= top:
            raise ValueError(f"Region {box} lies outside the rendered page")
        buffer = io.BytesIO()
        image.crop((left, top, right, lower)).save(buffer, format="PNG")
        return buffer.getvalue()

    def full_page(self) -> bytes:
        buffer = io.BytesIO()
        self._raster().save(buffer, format="PNG")
        return buffer.getvalue()


def extract_page_text(page: fitz.Page) -> list[TextRun]:
    runs: list[TextRun] = []
    for block in page.get_text("dict").get("blocks", []):
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                text = span.get("text", "").strip()
                if not text:
                    continue
                x, y = span.get("origin") or span["bbox"][:2]
                runs.append(TextRun(text=text, x=float(x), y=float(y)))
    return runs


def _page_candidates(page: Any, page_number: int) -> tuple[list[RawImageRegion], float, float]:
    box = page.cropbox
    left, bottom = float(box.left), float(box.bottom)
    width, height = float(box.width), float(box.height)
    contents = page.get_contents()
    operations = contents.operations if contents is not None else []
    xobjects = _xobjects(page)
    hits = list(
        walk_paint_operations(
            operations, _kinds(xobjects), open_form=form_opener(xobjects, page.pdf)
        )
    )
    if hits:
        candidates = [
            RawImageRegion(
                page_number=page_number,
                box=bbox_from_matrix(hit.matrix, height, (left, bottom)),
                source="paint",
                kind=hit.kind,
            )
            for hit in hits
        ]
    else:
        candidates = [
            RawImageRegion(page_number=page_number, box=fallback, source="resources")
            for fallback in synthesize_resource_boxes(resource_image_sizes(page), width)
        ]
    return candidates, width, height


def extract_regions(
    pdf_bytes: bytes,
    *,
    min_pixels: int | None = None,
    scale: float | None = None,
) -> list[PageExtraction]:
    """Locate, validate and crop the embedded images of every page.

    A page that fails to parse is skipped. Raises when the document itself cannot be
    opened, and ``RuntimeError`` when every page failed.
    """

    reader = PdfReader(io.BytesIO(pdf_bytes))
    document = fitz.open(stream=pdf_bytes, filetype="pdf")
    pages: list[PageExtraction] = []
    failures = 0
    try:
        page_count = len(reader.pages)
        if page_count == 0:
            raise RuntimeError("Document has no pages")
        for index in range(page_count):
            page_number = index + 1
            try:
                candidates, width, height = _page_candidates(reader.pages[index], page_number)
                kept = filter_regions(candidates, width, height, min_pixels=min_pixels)
                fitz_page = document[index]
                renderer = PageRenderer(fitz_page, scale)
                extraction = PageExtraction(page_number=page_number, width=width, height=height)
                for region in kept:
                    try:
                        extraction.regions.append(region.with_data(renderer.crop(region.box)))
                    except ValueError as exc:
                        logger.warning("Skipping region on page %s: %s", page_number, exc)
                extraction.text_runs = extract_page_text(fitz_page)
            except Exception as exc:  # noqa: BLE001
                failures += 1
                logger.warning("Skipping page %s: %s", page_number, exc)
                continue
            pages.append(extraction)
        if failures == page_count:
            raise RuntimeError(f"All {page_count} page(s) failed image extraction")
        logger.info(
            "Extracted %s image region(s) from %s page(s)",
            sum(len(page.regions) for page in pages),
            page_count,
        )
        return pages
    finally:
        document.close()


def render_first_page(pdf_bytes: bytes, scale: float | None = None) -> tuple[bytes, float, float]:
    document = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        page = document[0]
        return PageRenderer(page, scale).full_page(), page.rect.width, page.rect.height
    finally:
        document.close()
