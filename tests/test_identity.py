import unittest


class _StubClient:
    def __init__(self, users):
        self.users = users
        self.calls = []

    def get_user(self, user_id):
        self.calls.append(user_id)
        return dict(self.users[user_id])


class IdentityResolverTests(unittest.TestCase):
    def setUp(self):
        from app.models import Server
        from app.services.identity import IdentityResolver
        from tests.fakes import make_session

        self.db = make_session()
        self.addCleanup(self.db.close)
        self.server = Server(name="alpha", base_uri="https://alpha.example/")
        self.db.add(self.server)
        self.db.commit()
        self.resolver = IdentityResolver(self.db)

    def test_display_name_prefers_full_name_then_login(self):
        from app.services.identity import display_name

        self.assertEqual(display_name({"firstname": "Ada", "lastname": "Lovelace"}), "Ada Lovelace")
        self.assertEqual(display_name({"firstname": "", "lastname": "", "login": "ada"}), "ada")
        self.assertEqual(display_name({"id": 7}), "user-7")

    def test_known_credential_returns_linked_user_without_remote_call(self):
        from app.models import Credential, User

        user = User(name="Ada", password="!")
        user.credentials = [Credential(server_id=self.server.id, ext_id=5)]
        self.db.add(user)
        self.db.commit()
        client = _StubClient({})

        resolved = self.resolver.resolve_user(client, 5, self.server)

        self.assertEqual(resolved.id, user.id)
        self.assertEqual(client.calls, [])

    def test_new_remote_user_creates_user_and_credential(self):
        from app.models import Credential

        client = _StubClient({5: {"id": 5, "login": "ada", "firstname": "Ada", "lastname": "Lovelace",
                                  "mail": "ada@example.com"}})

        user = self.resolver.resolve_user(client, 5, self.server)
        self.db.commit()

        self.assertEqual(user.name, "Ada Lovelace")
        self.assertEqual(user.email, "ada@example.com")
        self.assertTrue(user.password.startswith("!"))
        credential = self.db.query(Credential).one()
        self.assertEqual((credential.user_id, credential.ext_id, credential.username), (user.id, 5, "ada"))
        self.assertIsNone(credential.api_key)

    def test_matches_existing_user_by_email(self):
        from app.models import User

        existing = User(name="A. Lovelace", email="ada@example.com", password="!")
        self.db.add(existing)
        self.db.commit()
        client = _StubClient({5: {"id": 5, "login": "ada", "firstname": "Ada", "lastname": "Lovelace",
                                  "mail": "ada@example.com"}})

        user = self.resolver.resolve_user(client, 5, self.server)

        self.assertEqual(user.id, existing.id)
        self.assertEqual(self.db.query(User).count(), 1)

    def test_matches_by_name_and_backfills_email(self):
        from app.models import User

        existing = User(name="Ada Lovelace", password="!")
        self.db.add(existing)
        self.db.commit()
        client = _StubClient({5: {"id": 5, "login": "ada", "firstname": "Ada", "lastname": "Lovelace",
                                  "mail": "ada@example.com"}})

        user = self.resolver.resolve_user(client, 5, self.server)
        self.db.commit()

        self.assertEqual(user.id, existing.id)
        self.assertEqual(user.email, "ada@example.com")

    def test_second_resolution_reuses_credential(self):
        client = _StubClient({5: {"id": 5, "login": "ada", "firstname": "Ada", "lastname": ""}})

        first = self.resolver.resolve_user(client, 5, self.server)
        self.db.commit()
        second = self.resolver.resolve_user(client, 5, self.server)

        self.assertEqual(first.id, second.id)
        self.assertEqual(client.calls, [5])


if __name__ == "__main__":
    unittest.main()
