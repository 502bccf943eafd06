"""
Tests for Snapshot Persistence

Tests the JSON snapshot file: atomic writes, retries, legacy upgrades and
recovery from corrupt records.
"""

import json
import os
import shutil
import tempfile
import unittest
from datetime import date, datetime, timezone
from unittest import mock

from ventaudit.storage import EntityStore, JsonSnapshotAdapter, PersistenceError


LEGACY_SNAPSHOT = [
    {
        "id": "1709281800000",
        "name": "Rivoli",
        "city": "Paris",
        "startDate": "2024-03-01T00:00:00.000Z",
        "endDate": "2024-06-30T00:00:00.000Z",
        "createdAt": "2024-03-01T08:30:00.000Z",
        "updatedAt": "2024-03-02T10:00:00.000Z",
        "buildings": [
            {
                "id": "1709281900000",
                "projectId": "1709281800000",
                "name": "Tower A",
                "createdAt": "2024-03-01T08:31:00.000Z",
                "functionalZones": [
                    {
                        "id": "1709282000000",
                        "buildingId": "1709281900000",
                        "name": "ZF01",
                        "createdAt": "2024-03-01T08:32:00.000Z",
                        "shutters": [
                            {
                                "id": "1709282100000",
                                "zoneId": "1709282000000",
                                "name": "V01",
                                "type": "high",
                                "referenceFlow": 1000,
                                "measuredFlow": 950,
                                "remarks": "Grille cleaned",
                                "createdAt": "2024-03-01T08:33:00.000Z",
                                "updatedAt": "2024-03-01T09:00:00.000Z",
                            }
                        ],
                    }
                ],
            }
        ],
    }
]


class PersistenceTestCase(unittest.TestCase):
    """Temporary snapshot location."""

    def setUp(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "data", "projects.json")

    def tearDown(self):
        """Clean up"""
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def write_raw(self, document):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            if isinstance(document, str):
                f.write(document)
            else:
                json.dump(document, f)

    def open_store(self, **kwargs):
        return EntityStore.open(JsonSnapshotAdapter(self.path, **kwargs))


class TestInitialize(PersistenceTestCase):
    """Test snapshot creation"""

    def test_creates_empty_snapshot(self):
        """Test that initialize creates the directory and an empty snapshot"""
        adapter = JsonSnapshotAdapter(self.path)
        adapter.initialize()

        self.assertTrue(os.path.exists(self.path))
        with open(self.path, encoding="utf-8") as f:
            document = json.load(f)
        self.assertEqual(document["schema_version"], 2)
        self.assertEqual(document["projects"], [])
        self.assertEqual(adapter.load(), [])

    def test_initialize_is_idempotent(self):
        """Test that a second initialize does not touch the file"""
        adapter = JsonSnapshotAdapter(self.path)
        adapter.initialize()

        with mock.patch.object(adapter, "_write_atomic") as write:
            adapter.initialize()
            write.assert_not_called()

    def test_no_temporary_files_left(self):
        """Test that atomic writes clean up after themselves"""
        store = self.open_store()
        store.create_project(name="Rivoli")

        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["projects.json"])

    def test_empty_file(self):
        """Test that an empty file loads as an empty tree"""
        self.write_raw("")
        store = self.open_store()
        self.assertEqual(store.list_projects(), [])


class TestRoundTrip(PersistenceTestCase):
    """Test save then load"""

    def build(self, store):
        project = store.create_project(
            name="Rivoli", city="Paris",
            start_date=date(2024, 3, 1), end_date=date(2024, 6, 30),
        )
        building = store.create_building(project.id, name="Tower A", description="North wing")
        zone = store.create_zone(building.id, name="ZF01")
        store.create_shutter(zone.id, name="V01", type="high", reference_flow=1000,
                             measured_flow=950, remarks="Grille cleaned")
        store.create_shutter(zone.id, name="V02", type="low", reference_flow=800,
                             measured_flow=560)
        store.toggle_favorite("zone", zone.id)
        store.record_quick_calc(0, 150)
        store.record_quick_calc(1000, 1100)
        store.create_note(title="Visit", content="Fan room locked")
        return project

    def test_tree_survives_reload(self):
        """Test that a reopened store holds an identical tree"""
        store = self.open_store()
        self.build(store)

        reopened = self.open_store()

        self.assertEqual(reopened.list_projects(), store.list_projects())
        self.assertEqual(reopened.get_favorites("zone"), store.get_favorites("zone"))
        self.assertEqual(reopened.quick_calc_history(), store.quick_calc_history())
        self.assertEqual(reopened.list_notes(), store.list_notes())

    def test_infinite_deviation_is_not_written(self):
        """Test that history entries store only their flows"""
        store = self.open_store()
        self.build(store)

        with open(self.path, encoding="utf-8") as f:
            document = json.load(f)

        entry = document["quick_calc_history"][1]
        self.assertEqual(entry["reference_flow"], 0)
        self.assertNotIn("deviation", entry)
        self.assertEqual(self.open_store().quick_calc_history()[1].status, "non-compliant")

    def test_unchanged_snapshot_not_rewritten(self):
        """Test that saving identical state skips the disk write"""
        self.build(self.open_store())
        adapter = JsonSnapshotAdapter(self.path)
        snapshot = adapter.load_snapshot()

        with mock.patch.object(adapter, "_write_atomic") as write:
            adapter.save(snapshot.projects, snapshot.favorites,
                         snapshot.quick_calc_history, snapshot.notes)
            write.assert_not_called()

    def test_save_keeps_favorites_when_omitted(self):
        """Test that save without favorites keeps the stored ones"""
        store = self.open_store()
        self.build(store)
        adapter = JsonSnapshotAdapter(self.path)
        snapshot = adapter.load_snapshot()

        adapter.save(snapshot.projects[:1])

        self.assertEqual(adapter.load_snapshot().favorites, snapshot.favorites)

    def test_clear(self):
        """Test that clear leaves an empty snapshot"""
        store = self.open_store()
        self.build(store)

        store.adapter.clear()

        self.assertEqual(JsonSnapshotAdapter(self.path).load(), [])

    def test_storage_info(self):
        """Test storage statistics"""
        store = self.open_store()
        self.build(store)

        info = store.adapter.storage_info()

        self.assertEqual(info["projects_count"], 1)
        self.assertEqual(info["total_shutters"], 2)
        self.assertEqual(info["notes_count"], 1)
        self.assertEqual(info["size_bytes"], os.path.getsize(self.path))
        self.assertTrue(info["storage_size"].endswith(" KB"))
        self.assertEqual(info["storage_path"], self.path)


class TestWriteFailures(PersistenceTestCase):
    """Test retries and failures"""

    def test_transient_failure_is_retried(self):
        """Test that one failed write is retried"""
        store = self.open_store(write_retries=1)

        with mock.patch.object(store.adapter, "_write_atomic",
                               side_effect=[OSError("busy"), None]) as write:
            store.create_project(name="Rivoli")

        self.assertEqual(write.call_count, 2)
        self.assertEqual(len(store.list_projects()), 1)

    def test_persistent_failure_raises(self):
        """Test that exhausted retries raise PersistenceError and roll back"""
        store = self.open_store(write_retries=2)

        with mock.patch.object(store.adapter, "_write_atomic",
                               side_effect=OSError("disk full")) as write:
            with self.assertRaises(PersistenceError):
                store.create_project(name="Rivoli")

        self.assertEqual(write.call_count, 3)
        self.assertEqual(store.list_projects(), [])
        self.assertEqual(self.open_store().list_projects(), [])


class TestLoading(PersistenceTestCase):
    """Test loading stored and legacy snapshots"""

    def test_legacy_snapshot(self):
        """Test upgrading a snapshot written as a bare camelCase list"""
        self.write_raw(LEGACY_SNAPSHOT)

        store = self.open_store()
        project = store.list_projects()[0]
        building = project.buildings[0]
        zone = building.functional_zones[0]
        shutter = zone.shutters[0]

        self.assertEqual(project.city, "Paris")
        self.assertEqual(project.start_date, date(2024, 3, 1))
        self.assertEqual(project.end_date, date(2024, 6, 30))
        self.assertEqual(project.created_at, datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc))
        self.assertEqual(building.project_id, project.id)
        self.assertEqual(building.updated_at, building.created_at)
        self.assertEqual(zone.building_id, building.id)
        self.assertEqual(shutter.zone_id, zone.id)
        self.assertEqual(shutter.reference_flow, 1000.0)
        self.assertEqual(shutter.remarks, "Grille cleaned")
        self.assertEqual(shutter.compliance.status, "compliant")

    def test_legacy_snapshot_rewritten_on_save(self):
        """Test that the next save writes the current schema"""
        self.write_raw(LEGACY_SNAPSHOT)
        store = self.open_store()

        store.create_project(name="Second")

        with open(self.path, encoding="utf-8") as f:
            document = json.load(f)
        self.assertEqual(document["schema_version"], 2)
        self.assertIn("functional_zones", document["projects"][0]["buildings"][0])

    def test_corrupt_records_skipped(self):
        """Test that invalid records are dropped with a warning"""
        snapshot = json.loads(json.dumps(LEGACY_SNAPSHOT))
        shutters = snapshot[0]["buildings"][0]["functionalZones"][0]["shutters"]
        shutters.append({"id": "bad-type", "name": "V02", "type": "middle",
                         "referenceFlow": 100, "measuredFlow": 100})
        shutters.append({"id": "bad-flow", "name": "V03", "type": "low",
                         "referenceFlow": -5, "measuredFlow": 100})
        snapshot.append({"id": "no-name"})
        snapshot.append("not a record")
        self.write_raw(snapshot)

        with self.assertLogs("ventaudit.storage.migration", "WARNING"):
            store = self.open_store()

        projects = store.list_projects()
        self.assertEqual(len(projects), 1)
        self.assertEqual(projects[0].get_total_shutters(), 1)

    def test_duplicate_ids_skipped(self):
        """Test that a second record with a known id is dropped"""
        snapshot = LEGACY_SNAPSHOT + [dict(LEGACY_SNAPSHOT[0], name="Copy", buildings=[])]
        self.write_raw(snapshot)

        with self.assertLogs("ventaudit.storage.migration", "WARNING"):
            store = self.open_store()

        self.assertEqual([p.name for p in store.list_projects()], ["Rivoli"])

    def test_back_references_repaired(self):
        """Test that owner ids follow the containing record"""
        snapshot = json.loads(json.dumps(LEGACY_SNAPSHOT))
        snapshot[0]["buildings"][0]["projectId"] = "somewhere-else"
        self.write_raw(snapshot)

        with self.assertLogs("ventaudit.storage.migration", "WARNING"):
            store = self.open_store()

        project = store.list_projects()[0]
        self.assertEqual(project.buildings[0].project_id, project.id)

    def test_inverted_dates_repaired(self):
        """Test that an end date before the start date is cleared on load"""
        snapshot = json.loads(json.dumps(LEGACY_SNAPSHOT))
        snapshot[0]["endDate"] = "2024-01-01T00:00:00.000Z"
        self.write_raw(snapshot)

        with self.assertLogs("ventaudit.storage.migration", "WARNING"):
            store = self.open_store()

        project = store.list_projects()[0]
        self.assertEqual(project.start_date, date(2024, 3, 1))
        self.assertIsNone(project.end_date)

    def test_stale_favorites_dropped(self):
        """Test that favorites of unknown entities are not loaded"""
        self.write_raw({
            "schema_version": 2,
            "projects": LEGACY_SNAPSHOT,
            "favorites": {"projects": ["1709281800000", "gone"], "shutters": ["gone"]},
            "quick_calc_history": [],
        })

        store = self.open_store()

        self.assertEqual(store.get_favorites("project"), ["1709281800000"])
        self.assertEqual(store.get_favorites("shutter"), [])

    def test_legacy_local_midnight_dates(self):
        """Test that dates saved as local midnight in UTC keep their calendar day"""
        snapshot = json.loads(json.dumps(LEGACY_SNAPSHOT))
        snapshot[0]["startDate"] = "2024-02-29T23:00:00.000Z"
        snapshot[0]["endDate"] = "2024-06-29T22:00:00.000Z"
        snapshot.append(dict(snapshot[0], id="1709281800001", name="Montreal", buildings=[],
                             startDate="2024-03-01T05:00:00.000Z",
                             endDate="2024-06-30T04:00:00.000Z"))
        self.write_raw(snapshot)

        rivoli, montreal = self.open_store().list_projects()

        self.assertEqual(rivoli.start_date, date(2024, 3, 1))
        self.assertEqual(rivoli.end_date, date(2024, 6, 30))
        self.assertEqual(montreal.start_date, date(2024, 3, 1))
        self.assertEqual(montreal.end_date, date(2024, 6, 30))

    def test_notes_loaded_from_envelope(self):
        """Test that stored notes load and invalid ones are skipped"""
        self.write_raw({
            "schema_version": 2,
            "projects": [],
            "notes": [
                {"id": "n1", "title": "Visit", "content": "Fan room locked",
                 "createdAt": "2024-03-01T08:30:00.000Z"},
                {"id": "n2", "title": "Empty", "content": None},
                {"id": "n3", "title": "   "},
                {"id": "n4", "title": "Photo", "content": {"image": "roof.jpg"}},
            ],
        })

        with self.assertLogs("ventaudit.storage.migration", "WARNING"):
            store = self.open_store()

        notes = store.list_notes()
        self.assertEqual([n.id for n in notes], ["n1", "n2"])
        self.assertEqual(notes[0].content, "Fan room locked")
        self.assertEqual(notes[0].created_at, datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc))
        self.assertEqual(notes[1].content, "")

    def test_snapshot_without_notes(self):
        """Test that an envelope without notes loads with none"""
        self.write_raw({"schema_version": 2, "projects": LEGACY_SNAPSHOT})

        self.assertEqual(self.open_store().list_notes(), [])

    def test_invalid_json(self):
        """Test that an unreadable file raises PersistenceError"""
        self.write_raw("{not json")
        with self.assertRaises(PersistenceError):
            self.open_store()

    def test_unknown_schema_version(self):
        """Test that snapshots from a newer version are refused"""
        self.write_raw({"schema_version": 99, "projects": []})
        with self.assertRaises(PersistenceError):
            self.open_store()

    def test_corrupt_file_left_untouched(self):
        """Test that a failed load does not overwrite the file"""
        self.write_raw("{not json")
        with self.assertRaises(PersistenceError):
            self.open_store()

        with open(self.path, encoding="utf-8") as f:
            self.assertEqual(f.read(), "{not json")


if __name__ == '__main__':
    unittest.main()
