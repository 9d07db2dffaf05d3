#!/usr/bin/env python
'''Unit tests for reading the hosts document'''

import unittest
import json
import os
import sys
import tempfile

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from route53update import (DesiredRecord, HostsFileNotFound, InvalidHostsFile,
                           RecordKind, load_records)


class TestLoadRecords(unittest.TestCase):
    '''Tests for load_records'''

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, 'hosts.json')

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, document):
        with open(self.path, 'w') as f:
            if isinstance(document, str):
                f.write(document)
            else:
                json.dump(document, f)

    def test_defaults_are_filled(self):
        '''Omitted type and ttl are the same as A / 300'''
        self.write({'records': [
            {'name': 'home.example.com', 'zone_id': 'Z1'},
            {'name': 'home.example.com', 'zone_id': 'Z1', 'type': 'A', 'ttl': 300},
        ]})

        records = load_records(self.path)

        self.assertEqual(records[0], records[1])
        self.assertEqual(records[0], DesiredRecord('home.example.com', 'Z1', 'A', 300))

    def test_integral_float_ttl(self):
        '''A ttl written as 300.0 is the same as 300, 300.5 is not a ttl'''
        self.write({'records': [{'name': 'home.example.com', 'zone_id': 'Z1', 'ttl': 300.0}]})

        records = load_records(self.path)

        self.assertEqual(records[0].ttl, 300)
        self.assertIsInstance(records[0].ttl, int)

        self.write({'records': [{'name': 'home.example.com', 'zone_id': 'Z1', 'ttl': 300.5}]})
        with self.assertRaises(InvalidHostsFile):
            load_records(self.path)

    def test_order_is_preserved(self):
        self.write({'records': [
            {'name': 'c.example.com', 'zone_id': 'Z1', 'ttl': 60},
            {'name': 'a.example.com', 'zone_id': 'Z2', 'type': 'CNAME'},
            {'name': 'b.example.com', 'zone_id': 'Z1'},
        ]})

        records = load_records(self.path)

        self.assertEqual([r.name for r in records], ['c.example.com', 'a.example.com', 'b.example.com'])
        self.assertEqual(records[0].ttl, 60)
        self.assertEqual(records[1].kind, RecordKind.CNAME)

    def test_empty_records_is_valid(self):
        self.write({'records': []})
        self.assertEqual(load_records(self.path), [])

    def test_missing_file(self):
        with self.assertRaises(HostsFileNotFound):
            load_records(os.path.join(self.tmpdir.name, 'nope.json'))

    def test_malformed_json(self):
        self.write('{"records": [ {"name": ')
        with self.assertRaises(InvalidHostsFile):
            load_records(self.path)

    def test_wrong_shape(self):
        for document in [[], {'hosts': []}, {'records': {}}, {'records': ['home.example.com']}]:
            with self.subTest(document=document):
                self.write(document)
                with self.assertRaises(InvalidHostsFile):
                    load_records(self.path)

    def test_invalid_entries(self):
        for entry in [{'zone_id': 'Z1'},
                      {'name': 'home.example.com'},
                      {'name': '', 'zone_id': 'Z1'},
                      {'name': 'home.example.com', 'zone_id': 'Z1', 'ttl': 0},
                      {'name': 'home.example.com', 'zone_id': 'Z1', 'ttl': '300'},
                      {'name': 'home.example.com', 'zone_id': 'Z1', 'ttl': True}]:
            with self.subTest(entry=entry):
                self.write({'records': [entry]})
                with self.assertRaises(InvalidHostsFile):
                    load_records(self.path)


class TestRecordKind(unittest.TestCase):
    '''Tests for RecordKind'''

    def test_only_a_is_managed(self):
        '''Only the exact type "A" is written; "a" is skipped like any other type'''
        self.assertTrue(RecordKind.parse('A').managed)
        for value in ['a', 'AAAA', 'CNAME', 'cname', 'MX', 'TXT']:
            with self.subTest(value=value):
                self.assertFalse(RecordKind.parse(value).managed)

    def test_unknown_kinds_are_unmanaged(self):
        kind = RecordKind.parse('HTTPS')
        self.assertIs(kind, RecordKind.UNKNOWN)
        self.assertFalse(kind.managed)


if __name__ == '__main__':
    unittest.main()
