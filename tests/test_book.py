import tempfile
import unittest
import zipfile
from io import BytesIO
from pathlib import Path

from ebooklib import epub as ebooklib_epub
from epub_fixtures import CONTAINER_XML, PNG_BYTES, SAMPLE_OPF, build_epub_bytes, read_members, sample_members, write_epub

from folio.book import Epub, ProcessOptions, process_epub
from folio.errors import (
    CorruptArchiveError,
    InvalidDescriptorError,
    NoDescriptorError,
    PathNotFoundError,
    ValidationError,
)


def _create_ebooklib_epub(output_path: Path) -> None:
    book = ebooklib_epub.EpubBook()
    book.set_identifier("urn:uuid:folio-interop")
    book.set_title("Interop")
    book.set_language("en")

    doc = ebooklib_epub.EpubHtml(title="First", file_name="chap_01.xhtml", lang="en")
    doc.content = (
        "<html xmlns=\"http://www.w3.org/1999/xhtml\">"
        "<head><title>First</title></head>"
        "<body><p>First chapter</p></body></html>"
    )
    book.add_item(doc)
    book.toc = [doc]
    book.spine = ["nav", doc]
    book.add_item(ebooklib_epub.EpubNcx())
    book.add_item(ebooklib_epub.EpubNav())
    ebooklib_epub.write_epub(str(output_path), book, {"epub3_pages": False})


class OpenEpubTests(unittest.TestCase):
    def test_missing_descriptor(self) -> None:
        members = [(name, payload) for name, payload in sample_members() if not name.endswith(".opf")]
        with self.assertRaises(NoDescriptorError):
            Epub.from_bytes(build_epub_bytes(members))

    def test_corrupt_and_missing_files(self) -> None:
        with self.assertRaises(CorruptArchiveError):
            Epub.from_bytes(b"PK\x03\x04 truncated")
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(CorruptArchiveError):
                Epub.open(Path(tmp) / "missing.epub")

    def test_invalid_descriptor(self) -> None:
        with self.assertRaises(InvalidDescriptorError):
            Epub.from_bytes(build_epub_bytes(sample_members("<package><manifest>")))

    def test_first_descriptor_wins(self) -> None:
        members = sample_members() + [("OTHER/extra.opf", SAMPLE_OPF.replace("id=\"c1\"", "id=\"other\""))]
        epub = Epub.from_bytes(build_epub_bytes(members))
        self.assertEqual(epub.package.path, "OEBPS/content.opf")
        self.assertIsNotNone(epub.package.get_item("c1"))

    def test_spine_paths_follow_reading_order(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        self.assertEqual(
            epub.spine_paths(),
            ["OEBPS/text/ch1.xhtml", "OEBPS/text/ch2.xhtml", "OEBPS/text/ch3.xhtml"],
        )
        epub.remove_file("OEBPS/text/ch1.xhtml")
        self.assertEqual(epub.spine_paths(), ["OEBPS/text/ch2.xhtml", "OEBPS/text/ch3.xhtml"])

    def test_read_missing_file(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        with self.assertRaises(PathNotFoundError):
            epub.read("OEBPS/nope.xhtml")
        with self.assertRaises(PathNotFoundError):
            epub.read("OEBPS")


class RoundTripTests(unittest.TestCase):
    def test_unedited_round_trip_keeps_members(self) -> None:
        raw = build_epub_bytes()
        output = Epub.from_bytes(raw).to_bytes()
        before = read_members(raw)
        after = read_members(output)
        self.assertEqual(list(after), list(before))
        for name, data in before.items():
            if name != "OEBPS/content.opf":
                self.assertEqual(after[name], data, name)
        again = Epub.from_bytes(output)
        self.assertEqual([item.item_id for item in again.package.manifest], ["nav", "ncx", "c1", "c2", "c3", "cover-img"])
        self.assertEqual([ref.idref for ref in again.package.spine], ["c1", "c2", "c3"])

    def test_serialization_is_idempotent(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        epub.add_chapter("OEBPS/text/new.xhtml", "<p>new</p>")
        first = epub.to_bytes()
        self.assertEqual(epub.to_bytes(), first)
        self.assertEqual(Epub.from_bytes(first).to_bytes(), first)

    def test_compression_and_mimetype_placement(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        epub.add_image("OEBPS/images/extra.png", PNG_BYTES)
        with zipfile.ZipFile(BytesIO(epub.to_bytes()), "r") as zf:
            infos = zf.infolist()
            self.assertEqual(infos[0].filename, "mimetype")
            self.assertEqual(infos[0].compress_type, zipfile.ZIP_STORED)
            by_name = {info.filename: info for info in infos}
            self.assertEqual(by_name["OEBPS/styles/book.css"].compress_type, zipfile.ZIP_STORED)
            self.assertEqual(by_name["OEBPS/text/ch1.xhtml"].compress_type, zipfile.ZIP_DEFLATED)
            self.assertEqual(by_name["OEBPS/images/extra.png"].compress_type, zipfile.ZIP_DEFLATED)
            self.assertTrue(by_name["OEBPS/"].is_dir())

    def test_compressed_mimetype_is_written_stored(self) -> None:
        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            for name, payload in sample_members():
                if payload is None:
                    continue
                data = payload.encode("utf-8") if isinstance(payload, str) else payload
                zf.writestr(name, data, compress_type=zipfile.ZIP_DEFLATED)
        output = Epub.from_bytes(buffer.getvalue()).to_bytes()
        with zipfile.ZipFile(BytesIO(output), "r") as zf:
            self.assertEqual(zf.getinfo("mimetype").compress_type, zipfile.ZIP_STORED)

    def test_backslash_member_names_are_normalized(self) -> None:
        members = sample_members() + [("OEBPS\\extra\\note.xhtml", "<p>note</p>")]
        epub = Epub.from_bytes(build_epub_bytes(members))
        self.assertIn("OEBPS/extra/note.xhtml", epub.names())
        self.assertIn("OEBPS/extra/note.xhtml", read_members(epub.to_bytes()))


class RemoveFileTests(unittest.TestCase):
    def test_remove_cascades_to_manifest_and_spine(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        self.assertTrue(epub.remove_file("OEBPS/text/ch2.xhtml"))
        self.assertFalse(epub.remove_file("OEBPS/text/ch2.xhtml"))
        self.assertIsNone(epub.package.get_item("c2"))
        self.assertEqual([ref.idref for ref in epub.package.spine], ["c1", "c3"])
        members = read_members(epub.to_bytes())
        self.assertNotIn("OEBPS/text/ch2.xhtml", members)
        self.assertNotIn(b"ch2.xhtml", members["OEBPS/content.opf"])

    def test_remove_cascades_through_percent_encoded_href(self) -> None:
        opf = SAMPLE_OPF.replace("href=\"text/ch2.xhtml\"", "href=\"text/ch%202.xhtml\"")
        members = [
            ("OEBPS/text/ch 2.xhtml" if name == "OEBPS/text/ch2.xhtml" else name, payload)
            for name, payload in sample_members(opf)
        ]
        epub = Epub.from_bytes(build_epub_bytes(members))
        self.assertEqual(epub.spine_paths()[1], "OEBPS/text/ch 2.xhtml")
        self.assertTrue(epub.remove_file("OEBPS/text/ch 2.xhtml"))
        self.assertIsNone(epub.package.get_item("c2"))
        self.assertEqual([ref.idref for ref in epub.package.spine], ["c1", "c3"])
        self.assertNotIn(b"ch%202.xhtml", read_members(epub.to_bytes())["OEBPS/content.opf"])

    def test_remove_file_outside_package_dir(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        manifest_size = len(epub.package.manifest)
        self.assertTrue(epub.remove_file("META-INF/container.xml"))
        self.assertEqual(len(epub.package.manifest), manifest_size)
        self.assertNotIn("META-INF/container.xml", read_members(epub.to_bytes()))

    def test_remove_file_errors(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        with self.assertRaises(PathNotFoundError):
            epub.remove_file("OEBPS/text/ch9.xhtml")
        with self.assertRaises(ValidationError):
            epub.remove_file("")
        with self.assertRaises(ValidationError):
            epub.remove_file("OEBPS/./content.opf")

    def test_re_adding_removed_chapter_keeps_position(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        epub.remove_file("OEBPS/text/ch2.xhtml")
        epub.add_chapter("OEBPS/text/ch2.xhtml", "<p>again</p>", 1)
        names = list(read_members(epub.to_bytes()))
        self.assertLess(names.index("OEBPS/text/ch1.xhtml"), names.index("OEBPS/text/ch2.xhtml"))
        self.assertLess(names.index("OEBPS/text/ch2.xhtml"), names.index("OEBPS/text/ch3.xhtml"))


class SaveTests(unittest.TestCase):
    def test_save_writes_file_and_leaves_input(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = write_epub(Path(tmp) / "book.epub")
            original = source.read_bytes()
            epub = Epub.open(source)
            epub.replace_all_html("Chapter", "Part")
            target = Path(tmp) / "out" / "book.epub"
            epub.save(target)
            self.assertEqual(source.read_bytes(), original)
            self.assertIn(b"Part one.", read_members(target)["OEBPS/text/ch1.xhtml"])
            self.assertEqual(sorted(path.name for path in target.parent.iterdir()), ["book.epub"])

            epub.save_as(source)
            self.assertIn(b"Part one.", read_members(source)["OEBPS/text/ch1.xhtml"])

    def test_save_rejects_empty_path(self) -> None:
        epub = Epub.from_bytes(build_epub_bytes())
        with self.assertRaises(ValidationError):
            epub.save("")

    def test_ebooklib_reads_edited_book(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = Path(tmp) / "source.epub"
            _create_ebooklib_epub(source)

            epub = Epub.open(source)
            self.assertEqual(epub.package_dir, "EPUB")
            item_id = epub.add_chapter(
                "EPUB/text/new.xhtml",
                "<html xmlns=\"http://www.w3.org/1999/xhtml\"><head><title>New</title></head>"
                "<body><p>New chapter</p></body></html>",
            )
            target = Path(tmp) / "edited.epub"
            epub.save(target)

            book = ebooklib_epub.read_epub(str(target), {"ignore_ncx": True})
            item = book.get_item_with_href("text/new.xhtml")
            self.assertIsNotNone(item)
            self.assertEqual(item.get_id(), item_id)
            self.assertIn(b"New chapter", item.get_content())
            self.assertEqual(book.spine[-1][0], item_id)
            self.assertEqual(book.get_metadata("DC", "title")[0][0], "Interop")


class ProcessEpubTests(unittest.TestCase):
    def test_process_epub_runs_each_step(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = write_epub(Path(tmp) / "book.epub")
            target = Path(tmp) / "edited.epub"
            calls: list[str] = []

            def customize(epub: Epub) -> None:
                calls.append(epub.package.path)

            report = process_epub(
                ProcessOptions(
                    input_path=source,
                    output_path=target,
                    remove_html_keywords=["DRAFT"],
                    replace_html=lambda name, html_text: html_text.replace("Chapter", "Part"),
                    customize=customize,
                )
            )
            self.assertEqual(report.removed, ["OEBPS/text/ch1.xhtml"])
            self.assertEqual(report.modified, 2)
            self.assertEqual(calls, ["OEBPS/content.opf"])
            members = read_members(target)
            self.assertNotIn("OEBPS/text/ch1.xhtml", members)
            self.assertIn(b"Part two", members["OEBPS/text/ch2.xhtml"])
            self.assertEqual(members["META-INF/container.xml"], CONTAINER_XML.encode("utf-8"))

    def test_process_epub_requires_input(self) -> None:
        with self.assertRaises(ValidationError):
            process_epub(ProcessOptions(input_path="", output_path=Path("out.epub")))


if __name__ == "__main__":
    unittest.main()
