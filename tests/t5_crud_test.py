import json
from datetime import datetime

from docquery import db
from docquery.exc import InvalidQueryError, InvalidColumnError, ConstraintViolation

from . import models
from .util import DatabaseTestCase


class CreateTest(DatabaseTestCase):
    """ Test create() """

    async def test_create(self):
        Line = models.Line

        # Sparse insert: the database provides defaults
        line = await Line.create({'name': 'Assembly', 'department': 5})
        self.assertIsInstance(line, Line)
        self.assertIsInstance(line._id, int)
        self.assertEqual(line.name, 'Assembly')
        self.assertEqual(line.department, 5)
        self.assertIs(line.isActive, True)

        # Timestamps
        self.assertIsInstance(line.createdAt, datetime)
        self.assertEqual(line.createdAt, line.updatedAt)

        # Found
        self.assertEqual([l._id for l in await Line.find({'department': 5})], [line._id])

        # The key and timestamps can't be given
        other = await Line.create({'_id': 100, 'id': 100, 'name': 'Painting', 'createdAt': datetime(2000, 1, 1)})
        self.assertNotEqual(other._id, 100)
        self.assertNotEqual(other.createdAt, datetime(2000, 1, 1))

        # Without timestamps
        process = await models.Process.create({'name': 'Welding'})
        self.assertEqual(process.to_dict(), {'_id': process._id, 'name': 'Welding', 'description': None})

    async def test_create_arrays(self):
        Question, Audit = models.Question, models.Audit

        # Arrays come back as they were saved
        q = await Question.create({'questionText': 'Is it safe?', 'machines': [3, 7], 'lines': []})
        self.assertEqual(q.machines, [3, 7])
        self.assertEqual(q.lines, [])

        q = await Question.find_by_id(q._id)
        self.assertEqual(q.machines, [3, 7])
        self.assertEqual(q.lines, [])

        # Membership
        self.assertEqual([x._id for x in await Question.find({'machines': 7})], [q._id])
        self.assertEqual(await Question.find({'machines': 8}), [])

        # Order and types are kept
        q = await Question.create({'questionText': 'Is it clean?', 'machines': [1, 2, 3], 'lines': ['2', 1]})
        q = await Question.find_by_id(q._id)
        self.assertEqual(q.machines, [1, 2, 3])
        self.assertEqual(q.lines, ['2', 1])

        # Not given: an empty array
        q = await Question.create({'questionText': 'Is it safe enough?'})
        self.assertEqual(q.machines, [])

        # Arrays of objects, and objects
        answers = [{'question': 1, 'answer': 'No', 'remark': 'Dirty'}, {'question': 2, 'answer': 'Yes'}]
        meta = {'shift': 'night', 'crew': {'size': 3, 'names': ['A', 'B']}, 'remark': 'Ünïcode'}
        audit = await Audit.create({'answers': answers, 'meta': meta, 'machines': ['3', '4']})
        audit = await Audit.find_by_id(audit._id)
        self.assertEqual(audit.answers, answers)
        self.assertEqual(audit.meta, meta)
        self.assertEqual(audit.machines, ['3', '4'])

    async def test_create_errors(self):
        Line = models.Line

        with self.count_queries(0):
            with self.assertRaises(InvalidColumnError):
                await Line.create({'name': 'A', 'nonexistent': 1})
            with self.assertRaises(InvalidQueryError):
                await Line.create(['name'])

        # Constraints
        await models.Department.create({'name': 'Production'})
        with self.assertRaises(ConstraintViolation) as e:
            await models.Department.create({'name': 'Production'})
        self.assertEqual(e.exception.operation, 'create')
        self.assertEqual(await models.Department.count_documents(), 1)


class UpdateTest(DatabaseTestCase):
    """ Test updates """

    async def test_find_by_id_and_update(self):
        Line = models.Line
        line = await Line.create({'name': 'Assembly', 'department': 5})

        # Another field is changed behind our back
        await db.query('UPDATE lines SET isActive = 0 WHERE id = ?', [line._id])

        # Only the mentioned fields are written
        with self.count_queries(3) as log:
            updated = await Line.find_by_id_and_update(line._id, {'$set': {'name': 'Painting'}})
        self.assertEqual([s for s, p in log if s.startswith('UPDATE')],
                         ['UPDATE "lines" SET "name" = ?, "updatedAt" = ? WHERE "lines"."id" = ?'])

        self.assertEqual(updated.name, 'Painting')
        self.assertEqual(updated.department, 5)
        self.assertIs(updated.isActive, False)

        # Timestamps
        self.assertEqual(updated.createdAt, line.createdAt)
        self.assertGreaterEqual(updated.updatedAt, line.updatedAt)

        # Plain keys are $set
        updated = await Line.find_by_id_and_update(line._id, {'name': 'Welding', 'isActive': True})
        self.assertEqual((updated.name, updated.isActive), ('Welding', True))

        # new=False: the document before the update
        before = await Line.find_by_id_and_update(line._id, {'name': 'Assembly'}, new=False)
        self.assertEqual(before.name, 'Welding')
        self.assertEqual((await Line.find_by_id(line._id)).name, 'Assembly')

        # Not found
        self.assertIsNone(await Line.find_by_id_and_update(999, {'name': 'A'}))
        with self.count_queries(0):
            self.assertIsNone(await Line.find_by_id_and_update(None, {'name': 'A'}))

    async def test_update_operators(self):
        Department, Audit, Question = models.Department, models.Audit, models.Question
        department = await Department.create({'name': 'Production', 'description': 'Makes things'})

        # $inc
        await Department.find_by_id_and_update(department._id, {'$inc': {'employeeCount': 2}})
        department = await Department.find_by_id_and_update(department._id, {'$inc': {'employeeCount': 3}})
        self.assertEqual(department.employeeCount, 5)

        # $inc a NULL
        audit = await Audit.create({'lineLeader': 'Bob'})
        audit = await Audit.find_by_id_and_update(audit._id, {'$inc': {'score': 1}})
        self.assertEqual(audit.score, 1)

        # $unset
        department = await Department.find_by_id_and_update(department._id, {'$unset': {'description': ''}})
        self.assertIsNone(department.description)
        audit = await Audit.find_by_id_and_update(audit._id, {'$unset': ['score', 'lineLeader']})
        self.assertEqual((audit.score, audit.lineLeader), (None, None))

        # Mixed
        department = await Department.find_by_id_and_update(department._id, {
            'name': 'Assembly',
            '$set': {'isActive': False},
            '$inc': {'employeeCount': -1},
        })
        self.assertEqual((department.name, department.isActive, department.employeeCount), ('Assembly', False, 4))

        # Arrays are written as a whole
        q = await Question.create({'questionText': 'Is it safe?', 'machines': [1, 2]})
        q = await Question.find_by_id_and_update(q._id, {'machines': [3]})
        self.assertEqual(q.machines, [3])

        # Errors: before any I/O
        with self.count_queries(0):
            for update in ({'$push': {'machines': 1}},
                           {'$inc': {'employeeCount': 'a'}},
                           {'$inc': {'isActive': True}},
                           {'name': 'A', '$set': {'name': 'B'}},
                           {'$set': ['name']},
                           'name'):
                with self.assertRaises(InvalidQueryError, msg=update):
                    await Department.find_by_id_and_update(department._id, update)
            with self.assertRaises(InvalidColumnError):
                await Department.find_by_id_and_update(department._id, {'nonexistent': 1})
            with self.assertRaises(InvalidQueryError):
                await Question.find_by_id_and_update(q._id, {'$inc': {'machines': 1}})

        # Constraints
        await Department.create({'name': 'Quality'})
        with self.assertRaises(ConstraintViolation) as e:
            await Department.find_by_id_and_update(department._id, {'name': 'Quality'})
        self.assertEqual(e.exception.operation, 'find_by_id_and_update')
        self.assertEqual((await Department.find_by_id(department._id)).name, 'Assembly')

    async def test_find_one_and_update(self):
        Department = models.Department
        await Department.create({'name': 'Production'})

        # Found
        department = await Department.find_one_and_update({'name': 'Production'}, {'description': 'Makes things'})
        self.assertEqual(department.description, 'Makes things')

        before = await Department.find_one_and_update({'name': 'Production'}, {'description': 'x'}, new=False)
        self.assertEqual(before.description, 'Makes things')

        # Not found
        self.assertIsNone(await Department.find_one_and_update({'name': 'Quality'}, {'description': 'x'}))
        self.assertEqual(await Department.count_documents(), 1)

        # Upsert
        department = await Department.find_one_and_update(
            {'name': {'$eq': 'Quality'}, 'isActive': True, 'employeeCount': {'$gt': 0}},
            {'$set': {'description': 'Checks things'}, '$inc': {'employeeCount': 2}},
            upsert=True)
        self.assertEqual((department.name, department.description, department.employeeCount, department.isActive),
                         ('Quality', 'Checks things', 2, True))
        self.assertEqual(await Department.count_documents(), 2)

        # Upsert that finds a document
        department = await Department.find_one_and_update({'name': 'Quality'}, {'$inc': {'employeeCount': 1}},
                                                          upsert=True)
        self.assertEqual(department.employeeCount, 3)
        self.assertEqual(await Department.count_documents(), 2)

        # Upsert, new=False: there was nothing before
        self.assertIsNone(await Department.find_one_and_update({'name': 'Maintenance'}, {}, upsert=True, new=False))
        self.assertTrue(await Department.exists({'name': 'Maintenance'}))

    async def test_update_many(self):
        await self.create_fixtures()
        Audit = models.Audit

        self.assertEqual(await Audit.update_many({'score': {'$lt': 10}}, {'$set': {'status': 'closed'}}), 2)
        self.assertEqual([a.status for a in await Audit.find({})], ['open', 'closed', 'closed'])

        self.assertEqual(await Audit.update_many({'answers.answer': 'No'}, {'$inc': {'score': 1}}), 1)
        self.assertEqual([a.score for a in await Audit.find({})], [10, 8, 9])

        self.assertEqual(await Audit.update_many({'lineLeader': 'Eve'}, {'status': 'open'}), 0)
        self.assertEqual(await Audit.update_many({}, {'lineLeader': 'Carl'}), 3)
        self.assertEqual(await Audit.count_documents({'lineLeader': 'Carl'}), 3)

        # Nothing to update, no timestamps
        self.assertEqual(await models.Machine.update_many({}, {}), 0)

        with self.assertRaises(InvalidColumnError):
            await Audit.update_many({'nonexistent': 1}, {'status': 'open'})


class SaveTest(DatabaseTestCase):
    """ Test instance methods """

    async def test_save(self):
        Line = models.Line

        # Insert
        line = Line({'name': 'Assembly'}, department=5)
        self.assertIsNone(line._id)
        self.assertIs(await line.save(), line)
        self.assertIsInstance(line._id, int)
        self.assertIs(line.isActive, True)  # loaded back
        created_at = line.createdAt

        # Update
        line.name = 'Painting'
        line['isActive'] = False
        await line.save()
        self.assertEqual(line.createdAt, created_at)
        self.assertGreaterEqual(line.updatedAt, created_at)

        line = await Line.find_by_id(line._id)
        self.assertEqual((line.name, line.isActive, line.department), ('Painting', False, 5))
        self.assertEqual(line.createdAt, created_at)

        # Unknown fields
        with self.assertRaises(InvalidColumnError):
            Line({'nonexistent': 1})

        # Instances hold their own copy of the data
        data = {'name': 'Welding'}
        line = Line(data)
        line.name = 'Drilling'
        self.assertEqual(data, {'name': 'Welding'})

    async def test_save_loaded_fields(self):
        """ save() writes the fields that were loaded, and nothing else """
        Employee = models.Employee
        employee = await Employee.create({'fullName': 'Alice', 'emailId': 'alice@example.com', 'password': 'secret'})

        employee = await Employee.find_by_id(employee._id).select('fullName')
        employee.fullName = 'Alice Smith'
        await employee.save()

        employee = await Employee.find_by_id(employee._id).select('+password')
        self.assertEqual((employee.fullName, employee.emailId, employee.password),
                         ('Alice Smith', 'alice@example.com', 'secret'))

    async def test_save_populated(self):
        """ Populated references are saved as ids """
        await self.create_fixtures()
        Audit = models.Audit

        audit = await Audit.find_by_id(self.audits[1]._id).populate('line machines answers.question')
        self.assertEqual(audit.line.name, 'Assembly')
        audit.lineLeader = 'Carl'
        audit.answers[0]['answer'] = 'Yes'
        await audit.save()

        rows, meta = await db.query('SELECT line_id, machines, answers, lineLeader FROM audits WHERE id = ?',
                                    [audit._id])
        row = rows[0]
        self.assertEqual(row['line_id'], self.assembly._id)
        self.assertEqual(json.loads(row['machines']), [self.press._id])
        self.assertEqual(json.loads(row['answers']), [
            {'question': self.q_clean._id, 'answer': 'Yes'},
            {'question': self.q_guard._id, 'answer': 'Yes'},
        ])
        self.assertEqual(row['lineLeader'], 'Carl')

        # The populated instance is intact
        self.assertEqual(audit.line.name, 'Assembly')
        self.assertEqual(await Audit.count_documents({'answers.answer': 'No'}), 0)

    async def test_delete(self):
        line = await models.Line.create({'name': 'Assembly'})
        self.assertIs(await line.delete(), line)
        self.assertIsNone(await models.Line.find_by_id(line._id))


class DeleteTest(DatabaseTestCase):
    """ Test deletes """

    async def asyncSetUp(self):
        await super(DeleteTest, self).asyncSetUp()
        await self.create_fixtures()

    async def test_find_by_id_and_delete(self):
        Audit = models.Audit

        # The document as it was
        audit = await Audit.find_by_id_and_delete(self.audits[0]._id)
        self.assertIsInstance(audit, Audit)
        self.assertEqual(audit._id, self.audits[0]._id)
        self.assertEqual(audit.score, 10)
        self.assertEqual(audit.machines, [self.press._id])

        # Gone
        self.assertIsNone(await Audit.find_by_id(self.audits[0]._id))
        self.assertIsNone(await Audit.find_by_id_and_delete(self.audits[0]._id))
        self.assertEqual(await Audit.count_documents(), 2)

        with self.count_queries(0):
            self.assertIsNone(await Audit.find_by_id_and_delete(None))

    async def test_delete_many(self):
        Audit = models.Audit

        self.assertEqual(await Audit.delete_many({'score': {'$lt': 10}}), 2)
        self.assertEqual([a._id for a in await Audit.find({})], [self.audits[0]._id])

        self.assertEqual(await Audit.delete_many({'score': {'$lt': 10}}), 0)
        self.assertEqual(await Audit.delete_many({'machines': {'$in': [self.sprayer._id]}}), 0)

        # Everything
        self.assertEqual(await Audit.delete_many({}), 1)
        self.assertEqual(await Audit.count_documents(), 0)
