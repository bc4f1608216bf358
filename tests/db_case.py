import os
import tempfile
import unittest

from sqlalchemy.orm import sessionmaker

from estimate_hub.core import store
from estimate_hub.database import ensure_runtime_schema, make_engine


class DatabaseTestCase(unittest.TestCase):
    """Private file-backed SQLite store per test."""

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.database_url = f"sqlite:///{os.path.join(self._tmpdir.name, 'estimates.db')}"
        self.engine = make_engine(self.database_url)
        ensure_runtime_schema(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False)
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        self._tmpdir.cleanup()

    def make_owner(self, email="owner@example.com"):
        return store.create_user({"email": email, "name": "Owner"}, self.db)["id"]

    def make_estimate(self, owner_id=None, title="Kitchen renovation"):
        owner_id = owner_id or self.make_owner()
        return store.create_estimate(owner_id, {"title": title}, self.db)

    def count(self, model, *criteria):
        query = self.db.query(model)
        for criterion in criteria:
            query = query.filter(criterion)
        return query.count()
