import os
import tempfile
import unittest

from sqlalchemy import event

from docquery import db, DocQuerySettings

from . import models


class QueryCounter:
    """ Counts the number of queries """

    def __init__(self, engine):
        super(QueryCounter, self).__init__()
        # Events are only available on the sync engine
        self.engine = getattr(engine, 'sync_engine', engine)
        self.n = 0

    def start_logging(self):
        event.listen(self.engine, "after_cursor_execute", self._after_cursor_execute_event_handler, named=True)

    def stop_logging(self):
        event.remove(self.engine, "after_cursor_execute", self._after_cursor_execute_event_handler)
        self._done()

    def _done(self):
        """ Handler executed when logging is stopped """

    def _after_cursor_execute_event_handler(self, **kw):
        self.n += 1

    def print_log(self):
        pass  # nothing to do

    # Context manager

    def __enter__(self):
        self.start_logging()
        return self

    def __exit__(self, *exc):
        self.stop_logging()
        if exc != (None, None, None):
            self.print_log()
        return False


class QueryLogger(QueryCounter, list):
    """ Log raw SQL queries on the given engine """

    def _after_cursor_execute_event_handler(self, **kw):
        super(QueryLogger, self)._after_cursor_execute_event_handler()
        self.append((kw['statement'], kw['parameters']))

    def print_log(self):
        for i, (statement, parameters) in enumerate(self):
            print('=' * 5, ' Query #{}'.format(i))
            print(statement, parameters)


class ExpectedQueryCounter(QueryLogger):
    """ A QueryLogger that expects a certain number of queries, raises an error otherwise """

    def __init__(self, engine, expected_queries, comment):
        super(ExpectedQueryCounter, self).__init__(engine)
        self.expected_queries = expected_queries
        self.comment = comment

    def _done(self):
        if self.n != self.expected_queries:
            self.print_log()
            raise AssertionError('{} (expected {} queries, actually had {})'
                                 .format(self.comment, self.expected_queries, self.n))


def get_settings_for_tests(path) -> DocQuerySettings:
    """ Settings for a file-backed SQLite database """
    return DocQuerySettings(
        DATABASE_URL='sqlite+aiosqlite:///' + path,
        POOL_SIZE=5,
        POOL_TIMEOUT=5,
        POOL_PRE_PING=False,
    )


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """ Test case with a fresh database for every test

        The `db` singleton is connected to a temporary SQLite file, with all tables created.
    """

    async def asyncSetUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        await db.connect(get_settings_for_tests(os.path.join(self._tmpdir.name, 'test.db')))
        await models.create_all(db.engine)

    async def asyncTearDown(self):
        await db.disconnect()
        self._tmpdir.cleanup()

    def count_queries(self, expected_queries, comment='Unexpected number of queries'):
        """ Expect a number of queries within a `with` block """
        return ExpectedQueryCounter(db.engine, expected_queries, comment)

    async def create_fixtures(self):
        """ Departments, lines, machines, questions, and audits """
        self.production = await models.Department.create({'name': 'Production'})
        self.quality = await models.Department.create({'name': 'Quality'})

        self.assembly = await models.Line.create({'name': 'Assembly', 'department': self.production._id})
        self.painting = await models.Line.create({'name': 'Painting', 'department': self.production._id})

        self.press = await models.Machine.create({'name': 'Press', 'line': self.assembly._id})
        self.drill = await models.Machine.create({'name': 'Drill', 'line': self.assembly._id})
        self.sprayer = await models.Machine.create({'name': 'Sprayer', 'line': self.painting._id})

        self.q_clean = await models.Question.create({'questionText': 'Is the area clean?', 'isGlobal': True})
        self.q_guard = await models.Question.create({'questionText': 'Is the guard in place?',
                                                     'machines': [self.press._id, self.drill._id]})

        self.auditor = await models.Employee.create({'fullName': 'Alice Smith', 'emailId': 'alice@example.com',
                                                     'department': self.quality._id, 'password': 'secret'})

        self.audits = [
            await models.Audit.create({
                'line': self.assembly._id,
                'machine': self.press._id,
                'auditor': self.auditor._id,
                'lineLeader': 'Bob',
                'score': score,
                'machines': [self.press._id],
                'answers': [
                    {'question': self.q_clean._id, 'answer': answer},
                    {'question': self.q_guard._id, 'answer': 'Yes'},
                ],
            })
            for score, answer in ((10, 'Yes'), (7, 'No'), (9, 'Yes'))
        ]
