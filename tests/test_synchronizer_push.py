import logging
import tempfile
import unittest
from datetime import datetime


class PushTests(unittest.TestCase):
    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.addCleanup(logging.disable, logging.NOTSET)

        from app.services.storage import LocalFileStorage
        from app.services.watermarks import WatermarkStore
        from tests.fakes import build_world, make_session

        self.db = make_session()
        self.addCleanup(self.db.close)
        self.world = build_world(self.db)
        self.watermarks = WatermarkStore(self.db)
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.storage = LocalFileStorage(tmp.name)

    def _synchronizer(self, server):
        from app.services.synchronizer import RedmineSynchronizer

        return RedmineSynchronizer(
            self.db,
            server,
            target_timezone="UTC",
            storage=self.storage,
            client_factory=self.world.factory,
        )

    def _push_to_beta(self):
        candidates = self.watermarks.issues_to_push(self.world.project_a, self.world.project_b)
        return self._synchronizer(self.world.server_b).push(
            candidates, self.world.project_b, self.world.mirror
        )

    def _local_issue(self, subject="Crash on save", ext_id=501, **kwargs):
        from tests.fakes import add_local_issue

        return add_local_issue(
            self.db, self.world, subject, ext_id, datetime(2024, 3, 1, 10, 0), **kwargs
        )

    def _add_user(self, name, server=None, ext_id=None, api_key=None):
        from app.models import Credential, User

        user = User(name=name, password="!")
        if server is not None:
            user.credentials = [Credential(server_id=server.id, ext_id=ext_id, api_key=api_key)]
        self.db.add(user)
        self.db.commit()
        return user

    def test_first_push_creates_remote_issue_and_watermark(self):
        from app.models.sync_log import SyncStatus, SyncType

        issue = self._local_issue()

        log = self._push_to_beta()

        self.assertEqual(log.type, SyncType.PUSH)
        self.assertEqual(log.status, SyncStatus.SUCCESS)

        creates = self.world.remote_b.calls_named("create_issue")
        self.assertEqual(len(creates), 1)
        _, api_key, attributes = creates[0]
        self.assertEqual(api_key, "owner-b")
        self.assertEqual(attributes["subject"], "Crash on save")
        self.assertEqual(attributes["project_id"], 7)
        self.assertEqual(attributes["tracker_id"], 10)
        self.assertEqual(attributes["status_id"], 20)
        self.assertEqual(attributes["assigned_to_id"], 2)
        self.assertEqual(attributes["author_id"], 2)
        self.assertEqual(
            attributes["custom_fields"], [{"id": 9, "value": "https://alpha.example/issues/501"}]
        )

        watermark = self.watermarks.issue_watermark(issue, self.world.project_b)
        remote_id = max(self.world.remote_b.issues)
        self.assertEqual(watermark.ext_id, remote_id)
        self.assertEqual(
            watermark.updated_at,
            datetime.fromisoformat(self.world.remote_b.issues[remote_id]["updated_on"][:-1]),
        )

    def test_second_push_without_changes_sends_nothing(self):
        self._local_issue()
        self._push_to_beta()

        candidates = self.watermarks.issues_to_push(self.world.project_a, self.world.project_b)

        self.assertEqual(candidates, [])
        self._push_to_beta()
        self.assertEqual(len(self.world.remote_b.calls_named("create_issue")), 1)
        self.assertEqual(len(self.world.remote_b.calls_named("update_issue")), 0)

    def test_local_change_updates_existing_remote_issue(self):
        issue = self._local_issue()
        self._push_to_beta()
        remote_id = max(self.world.remote_b.issues)

        issue.subject = "Crash on save (regression)"
        issue.status = self.world.labels.closed
        issue.updated_at = datetime(2024, 3, 2, 9, 0)
        self.db.commit()

        self._push_to_beta()

        updates = self.world.remote_b.calls_named("update_issue")
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0][2], remote_id)
        self.assertEqual(updates[0][3]["status_id"], 25)
        self.assertNotIn("custom_fields", updates[0][3])
        self.assertEqual(self.world.remote_b.issues[remote_id]["subject"], "Crash on save (regression)")
        self.assertEqual(len(self.world.remote_b.calls_named("create_issue")), 1)

    def test_push_connects_as_author_when_author_has_key(self):
        alice = self._add_user("Alice", self.world.server_b, ext_id=15, api_key="alice-b")
        self.world.remote_b.add_user(15, "alice", "Alice", "", api_key="alice-b")
        self._local_issue(author=alice)

        self._push_to_beta()

        _, api_key, attributes = self.world.remote_b.calls_named("create_issue")[0]
        self.assertEqual(api_key, "alice-b")
        self.assertEqual(attributes["author_id"], 15)

    def test_unmapped_label_is_recorded_once_and_omitted(self):
        from app.models.sync_log import SyncStatus

        self._local_issue(status=self.world.labels.feedback)

        log = self._push_to_beta()

        self.assertEqual(log.status, SyncStatus.FINISHED_WITH_ERRORS)
        self.assertEqual(
            [e.message for e in log.errors],
            ["Cannot update remote label. Not matched label: Feedback"],
        )
        attributes = self.world.remote_b.calls_named("create_issue")[0][2]
        self.assertNotIn("status_id", attributes)
        self.assertEqual(attributes["tracker_id"], 10)

    def test_failure_on_one_issue_does_not_abort_push(self):
        from app.models.sync_log import SyncStatus

        self._local_issue("Bad", 501)
        good = self._local_issue("Good", 502)
        self.world.remote_b.fail_subjects.add("Bad")

        log = self._push_to_beta()

        self.assertEqual(log.status, SyncStatus.FINISHED_WITH_ERRORS)
        self.assertEqual(len(log.errors), 1)
        self.assertTrue(log.errors[0].message.startswith('Error pushing to Beta an issue "Bad":'))
        self.assertIsNotNone(self.watermarks.issue_watermark(good, self.world.project_b))

    def test_missing_owner_credential_aborts_push(self):
        from app.models import Credential, SyncLog
        from app.models.sync_log import SyncStatus
        from app.services.redmine_client import AccessError

        self._local_issue()
        credential = self.world.owner.credential_for(self.world.server_b.id)
        credential.api_key = None
        self.db.commit()

        with self.assertRaises(AccessError):
            self._push_to_beta()

        log = self.db.query(SyncLog).one()
        self.assertEqual(log.status, SyncStatus.FINISHED_WITH_ERRORS)
        self.assertEqual(len(log.errors), 1)
        self.assertEqual(self.world.remote_b.calls_named("create_issue"), [])
        self.assertIsNotNone(self.db.query(Credential).filter(Credential.id == credential.id).first())

    def test_rejected_author_key_falls_back_to_owner_without_aborting(self):
        from app.models.sync_log import SyncStatus

        alice = self._add_user("Alice", self.world.server_b, ext_id=15, api_key="revoked")
        revoked = self._local_issue("By Alice", 501, author=alice)
        owned = self._local_issue("By owner", 502)

        log = self._push_to_beta()

        self.assertEqual(log.status, SyncStatus.FINISHED_WITH_ERRORS)
        self.assertEqual(len(log.errors), 1)
        self.assertIn("Api key of Alice was rejected", log.errors[0].message)
        creates = self.world.remote_b.calls_named("create_issue")
        self.assertEqual([(c[1], c[2]["subject"]) for c in creates],
                         [("owner-b", "By Alice"), ("owner-b", "By owner")])
        self.assertIsNotNone(self.watermarks.issue_watermark(revoked, self.world.project_b))
        self.assertIsNotNone(self.watermarks.issue_watermark(owned, self.world.project_b))

    def test_comment_with_rejected_author_key_is_sent_as_owner(self):
        from app.models import IssueComment, SyncedComment

        issue = self._local_issue()
        dave = self._add_user("Dave", self.world.server_b, ext_id=17, api_key="revoked")
        self.db.add(IssueComment(issue=issue, author=dave, body="Ping"))
        self.db.commit()

        log = self._push_to_beta()

        notes_updates = [
            call for call in self.world.remote_b.calls_named("update_issue") if "notes" in call[3]
        ]
        self.assertEqual(len(notes_updates), 1)
        self.assertEqual(notes_updates[0][1], "owner-b")
        self.assertEqual(notes_updates[0][3]["notes"], "Ping\nComment author: Dave")
        self.assertEqual(self.db.query(SyncedComment).count(), 1)
        self.assertEqual(len(log.errors), 1)

    def test_missing_owner_key_while_pushing_comment_aborts_push(self):
        from app.models import IssueComment, SyncLog
        from app.services.redmine_client import AccessError

        issue = self._local_issue()
        bob = self._add_user("Bob")
        self.db.add(IssueComment(issue=issue, author=bob, body="Needs owner"))
        self.db.commit()
        erin = self._add_user("Erin", self.world.server_b, ext_id=18, api_key="erin-b")
        self.world.remote_b.add_user(18, "erin", "Erin", "", api_key="erin-b")
        issue.author = erin
        credential = self.world.owner.credential_for(self.world.server_b.id)
        credential.api_key = None
        self.db.commit()

        with self.assertRaises(AccessError):
            self._push_to_beta()

        log = self.db.query(SyncLog).one()
        self.assertEqual(len(log.errors), 1)
        self.assertIn("a comment #", log.errors[0].message)
        self.assertIsNotNone(log.finished_at)

    def test_comment_without_author_key_is_attributed_and_sent_as_owner(self):
        from app.models import IssueComment, SyncedComment

        issue = self._local_issue()
        bob = self._add_user("Bob")
        self.db.add(IssueComment(issue=issue, author=bob, body="Seen on staging too"))
        self.db.commit()

        log = self._push_to_beta()

        self.assertEqual(log.errors, [])
        remote_id = max(self.world.remote_b.issues)
        notes_updates = [
            call for call in self.world.remote_b.calls_named("update_issue") if "notes" in call[3]
        ]
        self.assertEqual(len(notes_updates), 1)
        _, api_key, issue_id, attributes = notes_updates[0]
        self.assertEqual(api_key, "owner-b")
        self.assertEqual(issue_id, remote_id)
        self.assertEqual(attributes["notes"], "Seen on staging too\nComment author: Bob")

        journal = self.world.remote_b.journals[remote_id][-1]
        synced = self.db.query(SyncedComment).one()
        self.assertEqual(synced.ext_id, journal["id"])
        self.assertEqual(synced.project_id, self.world.project_b.id)

    def test_comment_with_author_key_is_sent_as_author(self):
        from app.models import IssueComment

        issue = self._local_issue()
        carol = self._add_user("Carol", self.world.server_b, ext_id=16, api_key="carol-b")
        self.world.remote_b.add_user(16, "carol", "Carol", "", api_key="carol-b")
        self.db.add(IssueComment(issue=issue, author=carol, body="On it"))
        self.db.commit()

        self._push_to_beta()

        notes_updates = [
            call for call in self.world.remote_b.calls_named("update_issue") if "notes" in call[3]
        ]
        self.assertEqual(notes_updates[0][1], "carol-b")
        self.assertEqual(notes_updates[0][3]["notes"], "On it")

    def test_pushed_comment_is_not_pushed_again(self):
        from app.models import IssueComment

        issue = self._local_issue()
        self.db.add(IssueComment(issue=issue, author=self.world.owner, body="Once"))
        self.db.commit()
        self._push_to_beta()

        issue.updated_at = datetime(2024, 3, 2, 9, 0)
        self.db.commit()
        self._push_to_beta()

        notes_updates = [
            call for call in self.world.remote_b.calls_named("update_issue") if "notes" in call[3]
        ]
        self.assertEqual(len(notes_updates), 1)

    def test_file_is_uploaded_and_attached(self):
        from app.models import IssueFile, SyncedFile

        issue = self._local_issue()
        path = self.storage.generate_path("screenshot.png")
        self.storage.put(path, b"\x89PNG")
        self.db.add(IssueFile(issue=issue, author=self.world.owner, name="screenshot.png",
                              description="UI glitch", path=path))
        self.db.commit()

        log = self._push_to_beta()

        self.assertEqual(log.errors, [])
        remote_id = max(self.world.remote_b.issues)
        attachment = self.world.remote_b.attachments[remote_id][-1]
        self.assertEqual(attachment["filename"], "screenshot.png")
        self.assertEqual(attachment["description"], "UI glitch")
        self.assertEqual(self.world.remote_b.blobs[attachment["id"]], b"\x89PNG")
        self.assertEqual(self.db.query(SyncedFile).one().ext_id, attachment["id"])

    def test_missing_file_content_is_isolated_to_that_file(self):
        from app.models import IssueFile
        from app.models.sync_log import SyncStatus

        issue = self._local_issue()
        self.db.add(IssueFile(issue=issue, author=self.world.owner, name="gone.txt",
                              path="files/does-not-exist"))
        self.db.commit()

        log = self._push_to_beta()

        self.assertEqual(log.status, SyncStatus.FINISHED_WITH_ERRORS)
        self.assertEqual(len(log.errors), 1)
        self.assertIn('a file "gone.txt"', log.errors[0].message)
        self.assertIsNotNone(self.watermarks.issue_watermark(issue, self.world.project_b))

    def test_locally_created_issue_is_sent_home_and_gets_ext_id(self):
        from app.models import Issue

        issue = Issue(
            project=self.world.project_a,
            subject="Filed locally",
            author=self.world.owner,
            tracker=self.world.labels.bug,
            status=self.world.labels.new,
            updated_at=datetime(2024, 3, 1, 10, 0),
        )
        self.db.add(issue)
        self.db.commit()

        candidates = self.watermarks.issues_to_push(self.world.project_b, self.world.project_a)
        self.assertEqual([c.id for c in candidates], [issue.id])

        self._synchronizer(self.world.server_a).push(candidates, self.world.project_a, self.world.mirror)

        self.db.refresh(issue)
        remote_id = max(self.world.remote_a.issues)
        self.assertEqual(issue.ext_id, remote_id)
        attributes = self.world.remote_a.calls_named("create_issue")[0][2]
        self.assertEqual(attributes["status_id"], 1)
        self.assertEqual(attributes["assigned_to_id"], 1)
        self.assertNotIn("custom_fields", attributes)

    def test_changes_pulled_from_mirror_side_are_pushed_home(self):
        from app.services.watermarks import WatermarkStore

        issue = self._local_issue()
        self.world.remote_a.add_issue(
            501, "Crash on save", 1, 1, updated_on="2024-03-01T10:00:00Z",
            tracker_id=1, status_id=1, priority_id=2,
        )
        self._push_to_beta()
        remote_id = max(self.world.remote_b.issues)

        # Closed on beta, then pulled back.
        self.world.remote_b.issues[remote_id].update(status_id=25, updated_on="2024-03-03T08:00:00Z")
        self._synchronizer(self.world.server_b).pull(self.world.project_b, self.world.mirror)
        self.db.refresh(issue)
        self.assertEqual(issue.status_id, self.world.labels.closed.id)

        candidates = WatermarkStore(self.db).issues_to_push(self.world.project_b, self.world.project_a)
        self.assertEqual([c.id for c in candidates], [issue.id])

        self._synchronizer(self.world.server_a).push(candidates, self.world.project_a, self.world.mirror)

        updates = self.world.remote_a.calls_named("update_issue")
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0][2], 501)
        self.assertEqual(updates[0][3]["status_id"], 5)
        self.assertEqual(self.world.remote_a.calls_named("create_issue"), [])


if __name__ == "__main__":
    unittest.main()
