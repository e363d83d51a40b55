import logging
import unittest
from unittest.mock import Mock, patch

logging.disable(logging.CRITICAL)


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        from fastapi.testclient import TestClient
        from sqlalchemy import create_engine
        from sqlalchemy.orm import sessionmaker
        from sqlalchemy.pool import StaticPool

        from app.main import app
        from app.models import Base
        from app.models.base import get_db

        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        def override_get_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.addCleanup(app.dependency_overrides.clear)

        scheduler_patch = patch("app.api.mirrors.scheduler")
        self.scheduler = scheduler_patch.start()
        self.addCleanup(scheduler_patch.stop)

        # No context manager: the lifespan (real database and scheduler) stays off.
        self.client = TestClient(app)

    def _world(self):
        from tests.fakes import build_world

        db = self.Session()
        self.addCleanup(db.close)
        return build_world(db)


class HealthTests(ApiTestCase):
    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy", "service": "Tracker Mirror"})


class ServerApiTests(ApiTestCase):
    def test_create_normalizes_base_uri(self):
        response = self.client.post(
            "/api/servers/", json={"name": "alpha", "base_uri": "https://alpha.example"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["base_uri"], "https://alpha.example/")

    def test_duplicate_name_is_rejected(self):
        self.client.post("/api/servers/", json={"name": "alpha", "base_uri": "https://a.example/"})

        response = self.client.post(
            "/api/servers/", json={"name": "alpha", "base_uri": "https://b.example/"}
        )

        self.assertEqual(response.status_code, 400)

    def test_update_and_delete(self):
        server_id = self.client.post(
            "/api/servers/", json={"name": "alpha", "base_uri": "https://a.example/"}
        ).json()["id"]

        updated = self.client.put(
            f"/api/servers/{server_id}",
            json={"name": "alpha", "base_uri": "https://a2.example//", "backlink_field_id": 4},
        )
        deleted = self.client.delete(f"/api/servers/{server_id}")

        self.assertEqual(updated.json()["base_uri"], "https://a2.example/")
        self.assertEqual(updated.json()["backlink_field_id"], 4)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/servers/{server_id}").status_code, 404)

    def test_server_with_projects_cannot_be_deleted(self):
        world = self._world()

        response = self.client.delete(f"/api/servers/{world.server_a.id}")

        self.assertEqual(response.status_code, 400)

    def test_lists_projects_and_labels(self):
        world = self._world()

        projects = self.client.get(f"/api/servers/{world.server_a.id}/projects").json()
        labels = self.client.get(f"/api/servers/{world.server_a.id}/labels").json()

        self.assertEqual([p["name"] for p in projects], ["Project Alpha"])
        self.assertIn({"status", 5}, [{label["type"], label["ext_id"]} for label in labels])

    def test_import_reports_remote_failure(self):
        from app.services.redmine_client import RedmineError

        world = self._world()
        importer = Mock()
        importer.return_value.import_server.side_effect = RedmineError("boom", 500)

        with patch("app.api.servers.CatalogImporter", importer):
            response = self.client.post(
                f"/api/servers/{world.server_a.id}/import", json={"api_key": "k"}
            )

        self.assertEqual(response.status_code, 502)
        importer.return_value.import_server.assert_called_once()
        self.assertEqual(importer.return_value.import_server.call_args[0][1], "k")


class UserApiTests(ApiTestCase):
    def test_credentials_never_expose_api_key(self):
        world = self._world()
        user_id = self.client.post("/api/users/", json={"name": "Ada", "email": "ada@example.com"}).json()["id"]

        response = self.client.post(
            f"/api/users/{user_id}/credentials",
            json={"server_id": world.server_b.id, "ext_id": 40, "username": "ada", "api_key": "secret"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["has_api_key"])
        self.assertNotIn("api_key", response.json())
        user = self.client.get(f"/api/users/{user_id}").json()
        self.assertEqual([c["ext_id"] for c in user["credentials"]], [40])
        self.assertNotIn("secret", str(user))

    def test_credential_upsert_keeps_one_row_per_server(self):
        world = self._world()
        user_id = self.client.post("/api/users/", json={"name": "Ada"}).json()["id"]
        url = f"/api/users/{user_id}/credentials"

        first = self.client.post(url, json={"server_id": world.server_b.id, "ext_id": 40, "api_key": "k"})
        second = self.client.post(url, json={"server_id": world.server_b.id, "ext_id": 41})

        self.assertEqual(first.json()["id"], second.json()["id"])
        self.assertEqual(second.json()["ext_id"], 41)
        self.assertTrue(second.json()["has_api_key"])

    def test_remote_account_of_another_user_is_rejected(self):
        world = self._world()
        user_id = self.client.post("/api/users/", json={"name": "Ada"}).json()["id"]

        response = self.client.post(
            f"/api/users/{user_id}/credentials",
            json={"server_id": world.server_a.id, "ext_id": 1},
        )

        self.assertEqual(response.status_code, 400)

    def test_duplicate_email_is_rejected(self):
        self.client.post("/api/users/", json={"name": "Ada", "email": "ada@example.com"})

        response = self.client.post("/api/users/", json={"name": "Other", "email": "ada@example.com"})

        self.assertEqual(response.status_code, 400)


class MirrorApiTests(ApiTestCase):
    def _payload(self, world, **overrides):
        payload = {
            "name": "beta-alpha",
            "owner_id": world.owner.id,
            "left_project_id": world.project_b.id,
            "right_project_id": world.project_a.id,
            "sync_interval_minutes": 5,
        }
        payload.update(overrides)
        return payload

    def test_create_schedules_mirror(self):
        world = self._world()
        labels = world.labels

        response = self.client.post(
            "/api/mirrors/",
            json=self._payload(world, ltr_labels={"status": {str(labels.done.id): labels.closed.id}}),
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["ltr_labels"], {"status": {str(labels.done.id): labels.closed.id}})
        self.scheduler.schedule_mirror.assert_called_once_with(body["id"], 5)

    def test_same_project_on_both_sides_is_rejected(self):
        world = self._world()

        response = self.client.post(
            "/api/mirrors/", json=self._payload(world, right_project_id=world.project_b.id)
        )

        self.assertEqual(response.status_code, 400)

    def test_label_map_must_match_type_and_server(self):
        world = self._world()
        labels = world.labels

        wrong_type = self.client.post(
            "/api/mirrors/",
            json=self._payload(world, ltr_labels={"status": {str(labels.done.id): labels.bug.id}}),
        )
        wrong_server = self.client.post(
            "/api/mirrors/",
            json=self._payload(world, ltr_labels={"status": {str(labels.closed.id): labels.done.id}}),
        )
        unknown_type = self.client.post(
            "/api/mirrors/", json=self._payload(world, ltr_labels={"colour": {}})
        )

        self.assertEqual(wrong_type.status_code, 400)
        self.assertEqual(wrong_server.status_code, 400)
        self.assertEqual(unknown_type.status_code, 400)

    def test_toggle_unschedules_disabled_mirror(self):
        world = self._world()

        response = self.client.post(f"/api/mirrors/{world.mirror.id}/toggle")

        self.assertFalse(response.json()["sync_enabled"])
        self.scheduler.unschedule_mirror.assert_called_once_with(world.mirror.id)


class SyncApiTests(ApiTestCase):
    def test_trigger_unknown_mirror_is_404(self):
        response = self.client.post("/api/sync/999/trigger")

        self.assertEqual(response.status_code, 404)

    def test_trigger_returns_run_result(self):
        world = self._world()
        service = Mock()
        service.return_value.sync_mirror.return_value = {"status": "success", "errors": 0, "logs": [1, 2]}

        with patch("app.api.sync.SyncService", service):
            response = self.client.post(f"/api/sync/{world.mirror.id}/trigger")

        self.assertEqual(response.json()["status"], "success")
        service.return_value.sync_mirror.assert_called_once_with(world.mirror.id)

    def test_logs_are_listed_with_errors(self):
        from app.models import SyncLog, SyncLogError
        from app.models.sync_log import SyncStatus, SyncType

        world = self._world()
        db = self.Session()
        self.addCleanup(db.close)
        log = SyncLog(
            mirror_id=world.mirror.id,
            project_id=world.project_b.id,
            type=SyncType.PUSH,
            status=SyncStatus.FINISHED_WITH_ERRORS,
        )
        db.add(log)
        db.flush()
        db.add(SyncLogError(sync_log_id=log.id, message="Cannot update remote label"))
        db.commit()

        listed = self.client.get(f"/api/sync/logs?mirror_id={world.mirror.id}").json()
        detail = self.client.get(f"/api/sync/logs/{log.id}").json()

        self.assertEqual([entry["id"] for entry in listed], [log.id])
        self.assertEqual(listed[0]["status"], "Finished with errors")
        self.assertEqual([e["message"] for e in detail["errors"]], ["Cannot update remote label"])
        self.assertEqual(self.client.get("/api/sync/logs/999").status_code, 404)


if __name__ == "__main__":
    unittest.main()
