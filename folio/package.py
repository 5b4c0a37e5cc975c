from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import re
from pathlib import Path
from typing import NamedTuple, Optional
from urllib.parse import unquote

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape
from lxml import etree as LXML_ET

from .errors import InvalidDescriptorError, SerializationError, ValidationError
from .paths import normalize, parent_dir

EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"
PACKAGE_TEMPLATE = "package.opf.j2"
XHTML_MEDIA_TYPE = "application/xhtml+xml"
DEFAULT_ID_BASE = "chapter"

_NAME_PREFIX = r"((?:[A-Za-z_][\w.-]*:)?)"
_ID_UNSAFE_RE = re.compile(r"[^a-z0-9]+")


@dataclass
class ManifestItem:
    item_id: str
    href: str
    media_type: str
    properties: Optional[str] = None
    fallback: Optional[str] = None
    media_overlay: Optional[str] = None


@dataclass
class SpineItemRef:
    idref: str
    linear: Optional[str] = None
    properties: Optional[str] = None


@dataclass
class _Section:
    kind: str
    raw: str = ""
    prefix: str = ""
    start_tag: str = ""


@dataclass
class _SourceLayout:
    root_tag: str
    root_prefix: str
    sections: list[_Section] = field(default_factory=list)


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("opf.j2", "xml", "opf"),
            default_for_string=False,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


def _tag_local_name(tag: object) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _xml_root_from_bytes(raw: bytes) -> LXML_ET._Element:
    parser = LXML_ET.XMLParser(resolve_entities=False, no_network=True)
    return LXML_ET.fromstring(raw, parser=parser)


def _optional_attr(node: LXML_ET._Element, name: str) -> Optional[str]:
    value = str(node.attrib.get(name) or "").strip()
    return value or None


class _Span(NamedTuple):
    start: int
    end: int
    prefix: str
    start_tag: str


def _open_start_tag(tag: str) -> str:
    if tag.endswith("/>"):
        return f"{tag[:-2].rstrip()}>"
    return tag


def _find_section_span(text: str, local_name: str, start: int) -> Optional[_Span]:
    opening = re.compile(rf"<{_NAME_PREFIX}{re.escape(local_name)}(?=[\s/>])[^>]*>")
    match = opening.search(text, start)
    if not match:
        return None
    prefix = match.group(1)
    if match.group(0).endswith("/>"):
        return _Span(match.start(), match.end(), prefix, match.group(0))

    # same-named sections may nest (EPUB 3 <collection>)
    tags = re.compile(rf"<(/?){re.escape(prefix)}{re.escape(local_name)}(?=[\s/>])[^>]*>")
    depth = 1
    for tag in tags.finditer(text, match.end()):
        if tag.group(1):
            depth -= 1
            if depth == 0:
                return _Span(match.start(), tag.end(), prefix, match.group(0))
        elif not tag.group(0).endswith("/>"):
            depth += 1
    return None


def _find_markup_span(text: str, opener: str, closer: str, start: int) -> Optional[_Span]:
    begin = text.find(opener, start)
    if begin < 0:
        return None
    end = text.find(closer, begin + len(opener))
    if end < 0:
        return None
    return _Span(begin, end + len(closer), "", "")


def _href_keys(href: str) -> set[str]:
    return {normalize(href), normalize(unquote(href))}


def sanitize_id(base: str) -> str:
    cleaned = _ID_UNSAFE_RE.sub("-", (base or "").lower()).strip("-")
    return cleaned or DEFAULT_ID_BASE


class PackageDocument:
    """Manifest and spine of an OPF document.

    Only the manifest and the spine are interpreted. Every other top-level
    section (metadata, guide, bindings, ...) is kept as the exact source text
    and written back unchanged, in its original position.
    """

    def __init__(self, path: str, layout: _SourceLayout) -> None:
        self.path = normalize(path)
        self.package_dir = parent_dir(self.path)
        self.manifest: list[ManifestItem] = []
        self.spine: list[SpineItemRef] = []
        self.spine_attributes: list[tuple[str, str]] = []
        self._layout = layout
        self._id_counter = 0

    @classmethod
    def parse(cls, raw: bytes, path: str) -> "PackageDocument":
        try:
            root = _xml_root_from_bytes(raw)
        except LXML_ET.XMLSyntaxError as exc:
            raise InvalidDescriptorError(f"failed to parse {path}: {exc}") from exc
        if _tag_local_name(root.tag) != "package":
            raise InvalidDescriptorError(f"{path} has no <package> root element")
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise InvalidDescriptorError(f"{path} is not UTF-8 encoded: {exc}") from exc

        root_match = re.search(rf"<{_NAME_PREFIX}package(?=[\s/>])[^>]*>", text)
        if not root_match:
            raise InvalidDescriptorError(f"{path} has no <package> start tag")
        layout = _SourceLayout(root_tag=_open_start_tag(root_match.group(0)), root_prefix=root_match.group(1))
        doc = cls(path, layout)

        cursor = root_match.end()
        for child in root:
            if isinstance(child, LXML_ET._Comment):
                span = _find_markup_span(text, "<!--", "-->", cursor)
                label = "comment"
            elif isinstance(child, LXML_ET._ProcessingInstruction):
                span = _find_markup_span(text, "<?", "?>", cursor)
                label = "processing instruction"
            else:
                local = _tag_local_name(child.tag)
                if not local:
                    continue
                span = _find_section_span(text, local, cursor)
                label = f"<{local}>"
            if span is None:
                raise InvalidDescriptorError(f"cannot locate {label} in {path}")
            cursor = span.end
            if label == "<manifest>" and not doc._has_section("manifest"):
                layout.sections.append(
                    _Section(kind="manifest", prefix=span.prefix, start_tag=_open_start_tag(span.start_tag))
                )
                doc._load_manifest(child)
            elif label == "<spine>" and not doc._has_section("spine"):
                layout.sections.append(
                    _Section(kind="spine", prefix=span.prefix, start_tag=_open_start_tag(span.start_tag))
                )
                doc._load_spine(child)
            else:
                layout.sections.append(_Section(kind="raw", raw=text[span.start:span.end]))

        for kind in ("manifest", "spine"):
            if not doc._has_section(kind):
                prefix = layout.root_prefix
                layout.sections.append(_Section(kind=kind, prefix=prefix, start_tag=f"<{prefix}{kind}>"))
        doc._id_counter = len(doc.manifest)
        return doc

    def _has_section(self, kind: str) -> bool:
        return any(section.kind == kind for section in self._layout.sections)

    def _load_manifest(self, node: LXML_ET._Element) -> None:
        for item in node:
            if _tag_local_name(item.tag) != "item":
                continue
            self.manifest.append(
                ManifestItem(
                    item_id=str(item.attrib.get("id") or "").strip(),
                    href=str(item.attrib.get("href") or "").strip(),
                    media_type=str(item.attrib.get("media-type") or "").strip(),
                    properties=_optional_attr(item, "properties"),
                    fallback=_optional_attr(item, "fallback"),
                    media_overlay=_optional_attr(item, "media-overlay"),
                )
            )

    def _load_spine(self, node: LXML_ET._Element) -> None:
        self.spine_attributes = [(str(key), str(value)) for key, value in node.attrib.items() if "}" not in str(key)]
        for itemref in node:
            if _tag_local_name(itemref.tag) != "itemref":
                continue
            self.spine.append(
                SpineItemRef(
                    idref=str(itemref.attrib.get("idref") or "").strip(),
                    linear=_optional_attr(itemref, "linear"),
                    properties=_optional_attr(itemref, "properties"),
                )
            )

    @property
    def ids(self) -> set[str]:
        return {item.item_id for item in self.manifest}

    def get_item(self, item_id: str) -> Optional[ManifestItem]:
        return next((item for item in self.manifest if item.item_id == item_id), None)

    def find_by_href(self, href: str) -> Optional[ManifestItem]:
        target = normalize(href)
        return next((item for item in self.manifest if target in _href_keys(item.href)), None)

    def generate_id(self, base: str) -> str:
        existing = self.ids
        prefix = sanitize_id(base)
        while True:
            self._id_counter += 1
            candidate = f"item-{prefix}-{self._id_counter}"
            if candidate not in existing:
                return candidate

    def add_manifest_item(self, href: str, media_type: str, properties: Optional[str] = None) -> str:
        if not href:
            raise ValidationError("manifest href cannot be empty")
        item_id = self.generate_id(Path(normalize(href)).name)
        self.manifest.append(ManifestItem(item_id=item_id, href=href, media_type=media_type, properties=properties))
        return item_id

    def insert_spine_ref(self, idref: str, index: int = -1) -> SpineItemRef:
        if self.get_item(idref) is None:
            raise ValidationError(f"spine reference to unknown manifest id: {idref}")
        ref = SpineItemRef(idref=idref)
        if index < 0 or index >= len(self.spine):
            self.spine.append(ref)
        else:
            self.spine.insert(index, ref)
        return ref

    def remove_by_href(self, href: str) -> list[str]:
        target = normalize(href)
        # manifest hrefs may be percent-encoded, archive paths never are
        removed = [item.item_id for item in self.manifest if target in _href_keys(item.href)]
        if not removed:
            return []
        removed_ids = set(removed)
        self.manifest = [item for item in self.manifest if item.item_id not in removed_ids]
        self.spine = [ref for ref in self.spine if ref.idref not in removed_ids]
        return removed

    def serialize(self) -> bytes:
        try:
            rendered = _render_epub_template(
                PACKAGE_TEMPLATE,
                root_tag=self._layout.root_tag,
                root_prefix=self._layout.root_prefix,
                sections=self._layout.sections,
                manifest=self.manifest,
                spine=self.spine,
            )
            return rendered.encode("utf-8")
        except (TemplateError, UnicodeEncodeError) as exc:
            raise SerializationError(f"failed to serialize {self.path}: {exc}") from exc
