import datetime
import sys
import tempfile
import unittest
import zipfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from batch_exporter import (
    GENERATION_FAILED_MESSAGE,
    BatchExporter,
    archive_entry_names,
    archive_name,
    card_file_name,
    sanitize_identifier,
    sanitize_person_name,
)
from bulk_types import (
    PHASE_COMPLETE,
    PHASE_GENERATING,
    PHASE_PACKAGING,
    PHASE_VALIDATING,
    STATUS_ERROR,
    STATUS_GENERATED,
    STATUS_PENDING,
    BulkGeneratorError,
    ExportPackagingError,
    ExportValidationError,
    ImageLoadError,
    Record,
)
from card_fields import CardDesign, default_fields
from card_renderer import DEFAULT_PIXEL_RATIO


EXPORT_DAY = datetime.date(2026, 1, 5)


def _record(row_index, name, identifier="", photo=None):
    fields = default_fields("school")
    fields[0].value = name
    fields[1].value = identifier
    return Record(row_index=row_index, fields=fields, profile_photo=photo)


class FakeRenderer:
    """Returns the card name as the image; fails for names listed in ``fail``."""

    def __init__(self, fail=(), broken_asset=None):
        self.fail = set(fail)
        self.broken_asset = broken_asset
        self.prepared = []
        self.calls = []

    def prepare(self, design, pixel_ratio):
        self.prepared.append((design.institution_logo, pixel_ratio))
        if self.broken_asset and design.institution_logo == self.broken_asset:
            raise ImageLoadError(f"Could not load image {self.broken_asset}")

    def render(self, config, pixel_ratio):
        self.calls.append((config.name, config.profile_photo, pixel_ratio))
        if config.name in self.fail:
            raise RuntimeError("surface broke")
        return f"PNG:{config.name}".encode("utf-8")


class FileNameTests(unittest.TestCase):
    def test_person_name(self):
        self.assertEqual(sanitize_person_name("  O'Brien,   Mary-Jane "), "OBrien MaryJane")
        self.assertEqual(sanitize_person_name("***"), "Unknown")

    def test_identifier(self):
        self.assertEqual(sanitize_identifier("R-100/A", 3), "R100A")
        self.assertEqual(sanitize_identifier("", 3), "ID3")

    def test_card_file_name(self):
        self.assertEqual(card_file_name(_record(1, "Asha Rao", "R100")), "Asha Rao_R100.png")
        self.assertEqual(card_file_name(_record(7, "Ben", "")), "Ben_ID7.png")

    def test_duplicate_entries_get_suffixes(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Asha", "R1"), _record(3, "asha", "r1")]
        self.assertEqual(
            archive_entry_names(records),
            ["Asha_R1.png", "Asha_R1_2.png", "asha_r1_3.png"],
        )

    def test_archive_name(self):
        self.assertEqual(
            archive_name("Springfield High", EXPORT_DAY),
            "Springfield_High_BulkIDCards_2026-01-05.zip",
        )
        self.assertEqual(archive_name("   ", EXPORT_DAY), "IDCards_BulkIDCards_2026-01-05.zip")


class ExportTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.output_dir = Path(self._tmp.name) / "out"
        self.design = CardDesign.for_category("school", institution_name="Springfield High")
        self.updates = []
        self.sleeps = []

    def tearDown(self):
        self._tmp.cleanup()

    def _exporter(self, renderer, **kwargs):
        return BatchExporter(
            renderer,
            sleep=self.sleeps.append,
            today=lambda: EXPORT_DAY,
            **kwargs,
        )

    def _export(self, exporter, records):
        return exporter.export(records, self.design, self.output_dir, progress=self.updates.append)

    def test_every_record_is_packaged(self):
        records = [_record(1, "Asha Rao", "R100", "/p/a.jpg"), _record(2, "Ben Lee", "R101")]
        renderer = FakeRenderer()

        summary = self._export(self._exporter(renderer), records)

        self.assertEqual(summary.generated, 2)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(
            summary.archive_path, self.output_dir / "Springfield_High_BulkIDCards_2026-01-05.zip"
        )
        self.assertTrue(all(record.status == STATUS_GENERATED for record in records))
        with zipfile.ZipFile(summary.archive_path) as archive:
            self.assertEqual(archive.namelist(), ["Asha Rao_R100.png", "Ben Lee_R101.png"])
            self.assertEqual(archive.read("Ben Lee_R101.png"), b"PNG:Ben Lee")
            self.assertTrue(
                all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())
            )
        self.assertFalse(any(path.suffix == ".part" for path in self.output_dir.iterdir()))

    def test_rendered_in_stored_order_with_design_photo_fallback(self):
        self.design.profile_photo = "/p/default.png"
        records = [_record(1, "B", "1"), _record(2, "A", "2", "/p/a.jpg")]
        renderer = FakeRenderer()

        self._export(self._exporter(renderer, pixel_ratio=2), records)

        self.assertEqual(
            renderer.calls,
            [("B", "/p/default.png", 2), ("A", "/p/a.jpg", 2)],
        )

    def test_progress_phases_are_ordered_and_monotonic(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2")]
        self._export(self._exporter(FakeRenderer()), records)

        self.assertEqual(
            [(update.phase, update.current, update.total) for update in self.updates],
            [
                (PHASE_VALIDATING, 0, 2),
                (PHASE_GENERATING, 0, 2),
                (PHASE_GENERATING, 1, 2),
                (PHASE_GENERATING, 2, 2),
                (PHASE_PACKAGING, 2, 2),
                (PHASE_COMPLETE, 2, 2),
            ],
        )
        currents = [update.current for update in self.updates]
        self.assertEqual(currents, sorted(currents))
        self.assertEqual(self.updates[-1].percent, 100)

    def test_partial_failure(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2"), _record(3, "Cara", "R3")]
        renderer = FakeRenderer(fail={"Ben"})

        with self.assertLogs("batch_exporter", level="ERROR"):
            summary = self._export(self._exporter(renderer), records)

        self.assertEqual((summary.generated, summary.failed), (2, 1))
        self.assertEqual(records[1].status, STATUS_ERROR)
        self.assertEqual(records[1].error_message, GENERATION_FAILED_MESSAGE)
        self.assertIsNone(records[1].generated_image)
        self.assertEqual(len(renderer.calls), 3)
        with zipfile.ZipFile(summary.archive_path) as archive:
            self.assertEqual(archive.namelist(), ["Asha_R1.png", "Cara_R3.png"])

    def test_no_archive_when_everything_fails(self):
        records = [_record(1, "Asha", "R1")]

        with self.assertLogs("batch_exporter", level="ERROR"):
            with self.assertRaisesRegex(ExportPackagingError, "No cards were generated"):
                self._export(self._exporter(FakeRenderer(fail={"Asha"})), records)

        self.assertEqual(records[0].status, STATUS_ERROR)
        self.assertFalse(self.output_dir.exists())
        self.assertNotIn(PHASE_COMPLETE, [update.phase for update in self.updates])

    def test_validation_failure_generates_nothing(self):
        records = [_record(1, "Asha", "R1"), _record(2, "", "R2")]
        renderer = FakeRenderer()

        with self.assertLogs("batch_exporter", level="WARNING"):
            with self.assertRaises(ExportValidationError) as ctx:
                self._export(self._exporter(renderer), records)

        self.assertEqual(str(ctx.exception), "Validation failed: 1 errors found")
        self.assertEqual(ctx.exception.result.errors, ("Row 2: Missing name",))
        self.assertEqual(renderer.calls, [])
        self.assertTrue(all(record.status == STATUS_PENDING for record in records))
        self.assertEqual([update.phase for update in self.updates], [PHASE_VALIDATING])
        self.assertFalse(self.output_dir.exists())

    def test_empty_batch_is_rejected(self):
        with self.assertRaisesRegex(BulkGeneratorError, "No records to process"):
            self._export(self._exporter(FakeRenderer()), [])

    def test_settle_delay_before_each_card(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2")]
        self._export(self._exporter(FakeRenderer(), settle_delay=0.25), records)
        self.assertEqual(self.sleeps, [0.25, 0.25])

    def test_no_settle_delay_by_default(self):
        self._export(self._exporter(FakeRenderer()), [_record(1, "Asha", "R1")])
        self.assertEqual(self.sleeps, [])

    def test_shared_assets_prepared_once_before_rendering(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2")]
        renderer = FakeRenderer()
        self._export(self._exporter(renderer, pixel_ratio=2), records)
        self.assertEqual(renderer.prepared, [(None, 2)])

    def test_bad_shared_asset_stops_run_before_generating(self):
        self.design.institution_logo = "/missing/logo.png"
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2")]
        renderer = FakeRenderer(broken_asset="/missing/logo.png")

        with self.assertRaisesRegex(ImageLoadError, "/missing/logo.png"):
            self._export(self._exporter(renderer), records)

        self.assertEqual(renderer.calls, [])
        self.assertTrue(all(record.status == STATUS_PENDING for record in records))
        self.assertEqual([update.phase for update in self.updates], [PHASE_VALIDATING])
        self.assertFalse(self.output_dir.exists())

    def test_default_pixel_ratio_comes_from_renderer(self):
        records = [_record(1, "Asha", "R1")]
        renderer = FakeRenderer()
        self._export(BatchExporter(renderer, today=lambda: EXPORT_DAY), records)
        self.assertEqual(renderer.prepared, [(None, DEFAULT_PIXEL_RATIO)])
        self.assertEqual(renderer.calls[0][2], DEFAULT_PIXEL_RATIO)

    def test_pixel_ratio_below_one_rejected(self):
        with self.assertRaises(ValueError):
            BatchExporter(FakeRenderer(), pixel_ratio=0)

    def test_negative_settle_delay_rejected(self):
        with self.assertRaises(ValueError):
            BatchExporter(FakeRenderer(), settle_delay=-1)

    def test_reexport_regenerates_from_fresh_state(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Ben", "R2")]
        with self.assertLogs("batch_exporter", level="ERROR"):
            first = self._export(self._exporter(FakeRenderer(fail={"Ben"})), records)
        self.assertEqual(first.failed, 1)

        records[1].fields[0].value = "Ben Lee"
        renderer = FakeRenderer()
        second = self._export(self._exporter(renderer), records)

        self.assertEqual((second.generated, second.failed), (2, 0))
        self.assertEqual(len(renderer.calls), 2)
        self.assertIsNone(records[1].error_message)
        with zipfile.ZipFile(second.archive_path) as archive:
            self.assertEqual(archive.namelist(), ["Asha_R1.png", "Ben Lee_R2.png"])

    def test_duplicate_names_do_not_overwrite(self):
        records = [_record(1, "Asha", "R1"), _record(2, "Asha", "R1")]
        summary = self._export(self._exporter(FakeRenderer()), records)
        with zipfile.ZipFile(summary.archive_path) as archive:
            self.assertEqual(archive.namelist(), ["Asha_R1.png", "Asha_R1_2.png"])


if __name__ == "__main__":
    unittest.main()
