from datetime import datetime
from unittest import mock

from docquery import db, Entity
from docquery.dialect import SqliteDialect
from docquery.exc import InvalidQueryError, InvalidColumnError
from docquery.handlers.populate import EntityResolver

from . import models
from .util import DatabaseTestCase


class QueryTest(DatabaseTestCase):
    """ Test find() and friends """

    async def asyncSetUp(self):
        await super(QueryTest, self).asyncSetUp()
        await self.create_fixtures()

    async def test_find(self):
        Line = models.Line

        # find()
        lines = await Line.find({'department': self.production._id})
        self.assertEqual([type(l) for l in lines], [Line, Line])
        self.assertEqual([l.name for l in lines], ['Assembly', 'Painting'])

        # Documents
        line = lines[0]
        self.assertEqual(line._id, self.assembly._id)
        self.assertEqual(line.id, self.assembly._id)
        self.assertEqual(line['name'], 'Assembly')
        self.assertIs(line.isActive, True)
        self.assertIsInstance(line.createdAt, datetime)
        self.assertEqual(line.department, self.production._id)
        self.assertEqual(set(line.to_dict()), {'_id', 'name', 'department', 'isActive', 'createdAt', 'updatedAt'})

        # Nothing found
        self.assertEqual(await Line.find({'name': 'nonexistent'}), [])

        # find_one()
        line = await Line.find_one({'name': 'Painting'})
        self.assertEqual(line._id, self.painting._id)
        self.assertIsNone(await Line.find_one({'name': 'nonexistent'}))

        # find_by_id()
        self.assertEqual((await Line.find_by_id(self.assembly._id)).name, 'Assembly')
        self.assertIsNone(await Line.find_by_id(999))

        # A `None` id never touches the database
        with self.count_queries(0):
            self.assertIsNone(await Line.find_by_id(None))

    async def test_cursor(self):
        Line = models.Line

        # Chained filters
        cursor = Line.find({'department': self.production._id}).where({'name': {'$ne': 'Painting'}})
        self.assertEqual([l._id for l in await cursor], [self.assembly._id])

        # A cursor can be executed again: every time, the query runs anew
        first = await cursor
        await Line.create({'name': 'Assembly 2', 'department': self.production._id})
        second = await cursor.exec()
        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 2)
        self.assertIsNot(first[0], second[0])

        # Async iteration
        names = []
        async for line in Line.find({}).sort('-name'):
            names.append(line.name)
        self.assertEqual(names, ['Painting', 'Assembly 2', 'Assembly'])

        async for line in Line.find_one({'name': 'nonexistent'}):
            self.fail('Nothing should be found')

        # Lean: plain dicts
        docs = await Line.find({'name': 'Assembly'}).lean()
        self.assertEqual(type(docs[0]), dict)
        self.assertEqual(docs[0]['_id'], self.assembly._id)

        # none()
        with self.count_queries(0):
            self.assertEqual(await Line.find({}).none(), [])
            self.assertIsNone(await Line.find_one({}).none())
            self.assertEqual(await Line.find({}).none().count(), 0)

        # Validation errors happen before any I/O
        with self.count_queries(0):
            with self.assertRaises(InvalidColumnError):
                await Line.find({'nonexistent': 1})
            with self.assertRaises(InvalidQueryError):
                await Line.find({}).limit(-1)

    async def test_count_exists(self):
        Audit = models.Audit

        self.assertEqual(await Audit.count_documents(), 3)
        self.assertEqual(await Audit.count_documents({'score': {'$gte': 9}}), 2)
        self.assertEqual(await Audit.find({'score': {'$gte': 9}}).limit(1).count(), 2)  # limit is ignored

        self.assertTrue(await Audit.exists({'lineLeader': 'Bob'}))
        self.assertFalse(await Audit.exists({'lineLeader': 'Eve'}))

    async def test_documents(self):
        audit = await models.Audit.find_by_id(self.audits[0]._id)

        # Arrays and objects
        self.assertEqual(audit.machines, [self.press._id])
        self.assertEqual(audit.answers, [
            {'question': self.q_clean._id, 'answer': 'Yes'},
            {'question': self.q_guard._id, 'answer': 'Yes'},
        ])
        self.assertEqual(audit.meta, {})  # NULL is an empty object

        # Database defaults
        self.assertEqual(audit.status, 'open')
        self.assertIsNone(audit.process)

        # Every instance has its own copy of the data
        again = await models.Audit.find_by_id(self.audits[0]._id)
        again.answers[0]['answer'] = 'No'
        self.assertEqual(audit.answers[0]['answer'], 'Yes')

        # Unknown fields
        with self.assertRaises(AttributeError):
            audit.nonexistent
        with self.assertRaises(AttributeError):
            audit.nonexistent = 1
        with self.assertRaises(AttributeError):
            audit._id = 1

    async def test_filters(self):
        Audit, Question = models.Audit, models.Question

        # Comparison operators
        self.assertEqual([a.score for a in await Audit.find({'score': {'$gt': 7, '$lte': 10}})], [10, 9])
        self.assertEqual([a.score for a in await Audit.find({'score': {'$in': [7, 9]}})], [7, 9])
        self.assertEqual([a.score for a in await Audit.find({'score': {'$nin': [7, 9]}})], [10])
        self.assertEqual([a.score for a in await Audit.find({'score': {'$in': []}})], [])
        self.assertEqual([a.score for a in await Audit.find({'$or': [{'score': 7}, {'score': 9}]})], [7, 9])
        self.assertEqual([a.score for a in await Audit.find({'$nor': [{'score': 7}, {'score': 9}]})], [10])

        # $ne includes NULLs
        await Audit.create({'lineLeader': 'Eve'})
        self.assertEqual([a.lineLeader for a in await Audit.find({'score': {'$ne': 10}})], ['Bob', 'Bob', 'Eve'])
        self.assertEqual(await Audit.count_documents({'score': None}), 1)
        self.assertEqual(await Audit.count_documents({'score': {'$exists': True}}), 3)

        # Regular expressions
        Line = models.Line
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': '^ass', '$options': 'i'}})],
                         ['Assembly'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$search': 'INT'}})], ['Painting'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': 'l.$'}})], ['Assembly'])

        # Array membership
        self.assertEqual([q._id for q in await Question.find({'machines': self.press._id})], [self.q_guard._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$in': [self.sprayer._id, self.drill._id]}})],
                         [self.q_guard._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$all': [self.press._id, self.drill._id]}})],
                         [self.q_guard._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$all': [self.press._id, self.sprayer._id]}})],
                         [])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$size': 0}})], [self.q_clean._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$ne': self.press._id}})], [self.q_clean._id])
        self.assertEqual([q._id for q in await Question.find({'machines': [self.press._id, self.drill._id]})],
                         [self.q_guard._id])

        # $elemMatch
        no = {'answer': 'No', 'question': self.q_clean._id}
        self.assertEqual([a._id for a in await Audit.find({'answers': {'$elemMatch': no}})], [self.audits[1]._id])
        self.assertEqual([a._id for a in await Audit.find({'answers.answer': 'No'})], [self.audits[1]._id])
        self.assertEqual([a._id for a in await Audit.find({'answers': {'$not': {'$elemMatch': no}},
                                                            'score': {'$exists': True}})],
                         [self.audits[0]._id, self.audits[2]._id])

        # JSON objects
        await Audit.find_by_id_and_update(self.audits[2]._id, {'meta': {'shift': 'night', 'crew': {'size': 3}}})
        self.assertEqual([a._id for a in await Audit.find({'meta.shift': 'night'})], [self.audits[2]._id])
        self.assertEqual([a._id for a in await Audit.find({'meta.crew.size': {'$gte': 3}})], [self.audits[2]._id])

    async def test_malformed_json(self):
        """ Cells that aren't JSON arrays don't break array filters: they have no elements """
        Question = models.Question

        # Written by something else
        await db.query('UPDATE questions SET machines = ? WHERE id = ?', ['not json', self.q_clean._id])
        await db.query('INSERT INTO questions (questionText, machines) VALUES (?, ?)', ['Is it on?', '{"a": 1}'])
        other_id = (await Question.find_one({'questionText': 'Is it on?'}))._id

        self.assertEqual([q._id for q in await Question.find({'machines': self.press._id})],
                         [self.q_guard._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$elemMatch': {'$gte': 0}}})],
                         [self.q_guard._id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$size': 0}})],
                         [self.q_clean._id, other_id])
        self.assertEqual([q._id for q in await Question.find({'machines': {'$nin': [self.press._id]}})],
                         [self.q_clean._id, other_id])

        # Read as an empty array
        with self.assertLogs('docquery', 'WARNING'):
            question = await Question.find_by_id(self.q_clean._id)
        self.assertEqual(question.machines, [])

    async def test_regex_case(self):
        Line = models.Line
        await Line.create({'name': 'A*B?', 'department': self.production._id})

        # Case-sensitive by default
        self.assertEqual(await Line.find({'name': {'$regex': '^assembly$'}}), [])
        self.assertEqual(await Line.find({'name': {'$regex': 'SEM'}}), [])
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': '^Assembly$'}})], ['Assembly'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$not': {'$regex': 'sem'}}})], ['Painting', 'A*B?'])

        # ...unless asked otherwise
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': '^assembly$', '$options': 'i'}})],
                         ['Assembly'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$search': 'SEM'}})], ['Assembly'])

        # Wildcard characters as literals
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': r'^A\*'}})], ['A*B?'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': r'B\?$'}})], ['A*B?'])
        self.assertEqual([l.name for l in await Line.find({'name': {'$regex': r'^a\*', '$options': 'i'}})], ['A*B?'])

    async def test_ids_as_strings(self):
        """ Arrays may hold ids as numbers, or as strings: both are found """
        Question = models.Question

        # Stored as strings
        await db.query('INSERT INTO questions (questionText, machines) VALUES (?, ?)',
                       ['Is the light on?', '["{}"]'.format(self.sprayer._id)])

        q = await Question.find_one({'machines': self.sprayer._id})
        self.assertEqual(q.questionText, 'Is the light on?')
        self.assertEqual(q.machines, [str(self.sprayer._id)])
        self.assertEqual(await Question.count_documents({'machines': str(self.sprayer._id)}), 1)

        # Stored as numbers, looked for as strings
        self.assertEqual(await Question.count_documents({'machines': str(self.press._id)}), 1)

        # Populated either way
        q = await Question.find_one({'machines': self.sprayer._id}).populate('machines')
        self.assertEqual([m.name for m in q.machines], ['Sprayer'])

    async def test_sort_and_pagination(self):
        Process = models.Process

        # Many duplicate names
        for i in range(7):
            await Process.create({'name': 'AB'[i % 2]})

        # Pages are stable and complete: the primary key breaks ties
        everything = await Process.find({}).sort('name').lean()
        self.assertEqual([p['name'] for p in everything], ['A'] * 4 + ['B'] * 3)
        ids = [p['_id'] for p in everything]
        self.assertEqual(ids[:4], sorted(ids[:4]))
        self.assertEqual(ids[4:], sorted(ids[4:]))

        pages = []
        for skip in range(0, 7, 3):
            pages.extend(await Process.find({}).sort('name').skip(skip).limit(3).lean())
        self.assertEqual([p['_id'] for p in pages], ids)

        # No explicit sort: the same page every time
        page = await Process.find({}).skip(2).limit(3).lean()
        self.assertEqual(await Process.find({}).skip(2).limit(3).lean(), page)
        self.assertEqual([p['_id'] for p in page], sorted(ids)[2:5])

        # Descending
        self.assertEqual([p._id for p in await Process.find({}).sort({'name': -1}).limit(3)], ids[4:])

        # No limit
        self.assertEqual(len(await Process.find({}).limit(0)), 7)
        self.assertEqual(len(await Process.find({}).skip(5)), 2)

    async def test_sort_json_object(self):
        Audit = models.Audit
        for audit, rank in zip(self.audits, (2, 3, 1)):
            await Audit.find_by_id_and_update(audit._id, {'meta': {'rank': rank, 'crew': {'size': 4 - rank}}})
        first, second, third = self.audits

        self.assertEqual([a._id for a in await Audit.find({}).sort('meta.rank')], [third._id, first._id, second._id])
        self.assertEqual([a._id for a in await Audit.find({}).sort({'meta.rank': -1})],
                         [second._id, first._id, third._id])
        self.assertEqual([a._id for a in await Audit.find({}).sort('meta.crew.size')],
                         [second._id, first._id, third._id])

    async def test_default_sort(self):
        Unit = models.Unit

        second = await Unit.create({'name': 'second', 'order': 2})
        first = await Unit.create({'name': 'first', 'order': 1})
        third = await Unit.create({'name': 'third', 'order': 2})

        self.assertEqual([u._id for u in await Unit.find({})], [first._id, second._id, third._id])
        self.assertEqual([u._id for u in await Unit.find({}).sort('-name')], [third._id, second._id, first._id])

    async def test_projection(self):
        Employee = models.Employee

        # Hidden fields are not loaded
        employee = await Employee.find_by_id(self.auditor._id)
        self.assertNotIn('password', employee)
        self.assertIsNone(employee.password)

        # ...unless asked for
        employee = await Employee.find_by_id(self.auditor._id).select('+password')
        self.assertEqual(employee.password, 'secret')

        # create() returns everything
        self.assertEqual(self.auditor.password, 'secret')

        # Include mode
        employee = await Employee.find_one({}).select('fullName')
        self.assertEqual(set(employee.to_dict()), {'_id', 'fullName'})

        # Exclude mode
        employee = await Employee.find_one({}).select({'createdAt': 0, 'updatedAt': 0})
        self.assertEqual(set(employee.to_dict()), {'_id', 'fullName', 'emailId', 'department', 'role'})


class PopulateTest(DatabaseTestCase):
    """ Test populate() """

    async def asyncSetUp(self):
        await super(PopulateTest, self).asyncSetUp()
        await self.create_fixtures()

    async def test_populate(self):
        Audit = models.Audit

        # One query for the audits, one for each path
        with self.count_queries(3):
            audits = await Audit.find({}).populate('line').populate('answers.question', 'questionText')

        self.assertEqual(len(audits), 3)
        for audit in audits:
            # Foreign key
            self.assertIsInstance(audit.line, models.Line)
            self.assertEqual(audit.line.name, 'Assembly')

            # References nested into an array of objects
            questions = [a['question'] for a in audit.answers]
            self.assertEqual([type(q) for q in questions], [models.Question, models.Question])
            self.assertEqual([q.questionText for q in questions], ['Is the area clean?', 'Is the guard in place?'])
            self.assertEqual(set(questions[0].to_dict()), {'_id', 'questionText'})

            # Not populated
            self.assertEqual(audit.machine, self.press._id)

        # Populated objects are not shared between documents
        self.assertIsNot(audits[0].line, audits[1].line)
        audits[0].line.name = 'Changed'
        self.assertEqual(audits[1].line.name, 'Assembly')

        # Plain dicts
        self.assertEqual(audits[0].to_dict()['answers'][0]['question'],
                         {'_id': self.q_clean._id, 'questionText': 'Is the area clean?'})

    async def test_populate_batching(self):
        Audit = models.Audit

        # More audits: still, one query per path
        for score in range(5):
            await Audit.create({'line': self.painting._id, 'machines': [self.sprayer._id, self.press._id], 'score': score})

        with self.count_queries(5):
            audits = await (Audit.find({})
                            .populate('line machines')
                            .populate('auditor')
                            .populate({'path': 'answers.question', 'select': 'questionText'}))
        self.assertEqual(len(audits), 8)

        self.assertEqual([m.name for m in audits[0].machines], ['Press'])
        self.assertEqual([m.name for m in audits[-1].machines], ['Sprayer', 'Press'])
        self.assertEqual(audits[-1].line.name, 'Painting')
        self.assertIsNone(audits[-1].auditor)
        self.assertEqual(audits[-1].answers, [])

        # Hidden fields are not populated
        self.assertEqual(audits[0].auditor.fullName, 'Alice Smith')
        self.assertNotIn('password', audits[0].auditor)

    async def test_populate_lean(self):
        audit = await models.Audit.find_one({}).populate('line', 'name').populate('machines').lean()
        self.assertEqual(audit['line'], {'_id': self.assembly._id, 'name': 'Assembly'})
        self.assertEqual(type(audit['machines'][0]), dict)
        self.assertEqual(audit['machines'][0]['name'], 'Press')

    async def test_populate_lean_option(self):
        audits = await (models.Audit.find({})
                        .populate({'path': 'line', 'select': 'name', 'options': {'lean': True}})
                        .populate('machines'))
        for audit in audits:
            self.assertIsInstance(audit, models.Audit)
            self.assertEqual(type(audit.line), dict)
            self.assertEqual(audit.line, {'_id': self.assembly._id, 'name': 'Assembly'})
            self.assertIsInstance(audit.machines[0], models.Machine)

    async def test_populate_chunks(self):
        """ More ids than a statement takes: one query per chunk """
        resolver = EntityResolver(models.Machine, chunk_size=2)
        with self.count_queries(2):
            found = await resolver.fetch([self.press._id, self.drill._id, self.sprayer._id, self.press._id])
        self.assertEqual({k: doc['name'] for k, doc in found.items()},
                         {self.press._id: 'Press', self.drill._id: 'Drill', self.sprayer._id: 'Sprayer'})

        # The default chunk size comes from the dialect
        await models.Audit.create({'machines': [self.sprayer._id, self.drill._id, self.press._id]})
        with mock.patch.object(SqliteDialect, 'max_in_list_size', 2):
            with self.count_queries(3):
                audits = await models.Audit.find({}).populate('machines')
        self.assertEqual([m.name for m in audits[-1].machines], ['Sprayer', 'Drill', 'Press'])
        self.assertEqual([m.name for m in audits[0].machines], ['Press'])

    async def test_populate_missing(self):
        Audit = models.Audit

        # References to documents that don't exist
        audit = await Audit.create({'line': 999, 'machines': [self.press._id, 998]})

        with self.assertLogs('docquery.handlers.populate', 'WARNING') as logs:
            audit = await Audit.find_by_id(audit._id).populate('line').populate('machines')

        # The ids are left in place
        self.assertEqual(audit.line, 999)
        self.assertEqual(audit.machines[0].name, 'Press')
        self.assertEqual(audit.machines[1], 998)
        self.assertEqual(len(logs.output), 2)
        self.assertIn('not found', logs.output[0])

    async def test_populate_nothing(self):
        Audit = models.Audit
        audit = await Audit.create({'lineLeader': 'Eve'})

        # No ids: no extra queries
        with self.count_queries(1):
            audit = await Audit.find_by_id(audit._id).populate('line machines answers.question')
        self.assertIsNone(audit.line)
        self.assertEqual(audit.machines, [])

    async def test_populate_instance(self):
        audit = await models.Audit.find_by_id(self.audits[0]._id)
        self.assertEqual(audit.line, self.assembly._id)

        await audit.populate('line')
        self.assertEqual(audit.line.name, 'Assembly')

        await audit.populate('answers.question', 'questionText')
        self.assertEqual(audit.answers[1]['question'].questionText, 'Is the guard in place?')

        # Already populated: nothing to do
        with self.count_queries(0):
            await audit.populate('line')
        self.assertIsInstance(audit.line, Entity)
