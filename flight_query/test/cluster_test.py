#!/usr/bin/env python3
import io
import os
import shutil
import tempfile
import unittest

import numpy as np
import pytest

from flight_query import bigmatrix, cluster, reducer
from flight_query.base import (FLIGHT_FIELD_NAMES, MISSING_VALUE, MONTH_INDEX, PLANE_ID_INDEX,
                               YEAR_INDEX, EmptyPartitionError, NotFoundError, WorkerFailure)
from flight_query.cluster import QueryCluster


def flight_matrix(records, dtype='int32'):
    matrix = np.zeros((len(records), len(FLIGHT_FIELD_NAMES)), dtype=dtype)
    for i, (year, month, plane) in enumerate(records):
        matrix[i, YEAR_INDEX] = year
        matrix[i, MONTH_INDEX] = month
        matrix[i, PLANE_ID_INDEX] = plane
    return matrix


def random_records(n, seed=7):
    rand = np.random.RandomState(seed)
    years = rand.randint(1987, 2009, n)
    months = rand.randint(1, 13, n)
    planes = rand.choice([-1, 3, 17, 101, 2048, 3417, 3743, 3758], n)
    return list(zip(years, months, planes))


def expected_first_flights(records):
    ''' Brute force first flight per plane '''
    first = {}
    for year, month, plane in records:
        if plane == MISSING_VALUE:
            continue
        if plane not in first or (year, month) < first[plane]:
            first[plane] = (year, month)
    return {int(p): (int(y), int(m)) for p, (y, m) in first.items()}


class GhostPlaneCluster(QueryCluster):
    ''' Dispatches a plane the table does not have '''
    def partition_keys(self, handle):
        planes = super(GhostPlaneCluster, self).partition_keys(handle)
        return np.append(planes, 999)


class TestQueryCluster(unittest.TestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp()
        records = [(2007, 5, 10), (2008, 1, 10), (2008, 3, 10), (2006, 12, 20), (2008, 2, -1)]
        bigmatrix.write_table(self.dir, '2008.desc', flight_matrix(records))

    def tearDown(self):
        reducer.detach_all()
        shutil.rmtree(self.dir, ignore_errors=True)

    def test_report(self):
        query = QueryCluster(self.dir, '2008.desc', 2, pool=QueryCluster.THREAD)
        self.assertEqual(query.start(), [(10, 2007, 5), (20, 2006, 12)])
        out = io.StringIO()
        query.report(out)
        self.assertEqual(out.getvalue(),
                         "First flight for: 10 on: 2007/5\n"
                         "First flight for: 20 on: 2006/12\n")

    def test_process_pool(self):
        query = QueryCluster(self.dir, '2008.desc', 2, pool=QueryCluster.PROCESS)
        self.assertEqual(query.start(), [(10, 2007, 5), (20, 2006, 12)])

    def test_progress_lines(self):
        query = QueryCluster(self.dir, '2008.desc', 1, pool=QueryCluster.THREAD)
        with self.assertLogs(cluster.logger, level='INFO') as logs:
            query.start()
        messages = [record.getMessage() for record in logs.records]
        self.assertIn('Plane: 1: 10', messages)
        self.assertIn('Plane: 2: 20', messages)

    def test_missing_plane_never_reported(self):
        bigmatrix.write_table(self.dir, 'ghost.desc', flight_matrix([(2008, 2, -1), (2008, 4, -1)]))
        query = QueryCluster(self.dir, 'ghost.desc', 1, pool=QueryCluster.THREAD)
        self.assertEqual(query.start(), [])

    def test_states(self):
        query = QueryCluster(self.dir, '2008.desc', 1, pool=QueryCluster.THREAD)
        self.assertEqual(query.status, QueryCluster.INIT)
        with pytest.raises(RuntimeError):
            query.report(io.StringIO())
        query.start()
        self.assertEqual(query.status, QueryCluster.COLLECTED)
        query.report(io.StringIO())
        self.assertEqual(query.status, QueryCluster.EMITTED)
        self.assertEqual(set(query.timings.keys()), {'attach', 'plane_count', 'query'})

    def test_partition_keys_sorted(self):
        query = QueryCluster(self.dir, '2008.desc', 1, pool=QueryCluster.THREAD)
        handle = query.attach()
        self.assertEqual(list(query.count_planes(handle)), [10, 20])
        self.assertEqual(query.status, QueryCluster.KEYS_COMPUTED)

    def test_missing_table(self):
        query = QueryCluster(self.dir, 'all.desc', 2, pool=QueryCluster.THREAD)
        with pytest.raises(NotFoundError):
            query.start()
        self.assertEqual(query.status, QueryCluster.INIT)

    def test_empty_partition_fails_run(self):
        query = GhostPlaneCluster(self.dir, '2008.desc', 2, pool=QueryCluster.THREAD)
        with pytest.raises(WorkerFailure) as info:
            query.start()
        self.assertEqual(info.value.plane_index, 3)
        self.assertEqual(info.value.plane, 999)
        self.assertIsInstance(info.value.__cause__, EmptyPartitionError)
        self.assertIsNone(query.results)

    def test_empty_partition_fails_process_run(self):
        query = GhostPlaneCluster(self.dir, '2008.desc', 2, pool=QueryCluster.PROCESS)
        with pytest.raises(WorkerFailure) as info:
            query.start()
        self.assertIsInstance(info.value.__cause__, EmptyPartitionError)

    def test_bad_configuration(self):
        with pytest.raises(ValueError):
            QueryCluster(self.dir, '2008.desc', 0)
        with pytest.raises(ValueError):
            QueryCluster(self.dir, '2008.desc', 2, pool='pbs')

    def test_default_workers(self):
        self.assertGreaterEqual(QueryCluster(self.dir, '2008.desc').worker_num, 1)

    def test_replica_round_robin(self):
        query = QueryCluster(self.dir, '2008.desc', 2, replicas=['all_flights_1.desc', 'all_flights_2.desc'])
        self.assertEqual(os.path.basename(query.location(1)), 'all_flights_1.desc')
        self.assertEqual(os.path.basename(query.location(2)), 'all_flights_2.desc')
        self.assertEqual(os.path.basename(query.location(3)), 'all_flights_1.desc')
        self.assertEqual(os.path.basename(QueryCluster(self.dir, '2008.desc', 2).location(5)), '2008.desc')

    def test_query_on_replicas(self):
        with bigmatrix.open_table('2008.desc', self.dir) as handle:
            names = bigmatrix.replicate(handle, 2)
        query = QueryCluster(self.dir, '2008.desc', 2, pool=QueryCluster.THREAD, replicas=names)
        self.assertEqual(query.start(), [(10, 2007, 5), (20, 2006, 12)])


class TestQueryProperties(unittest.TestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp()
        self.records = random_records(500)
        bigmatrix.write_table(self.dir, 'all.desc', flight_matrix(self.records))
        self.expected = expected_first_flights(self.records)

    def tearDown(self):
        reducer.detach_all()
        shutil.rmtree(self.dir, ignore_errors=True)

    def run_query(self, workers, pool):
        return QueryCluster(self.dir, 'all.desc', workers, pool=pool).start()

    def test_one_entry_per_plane(self):
        results = self.run_query(4, QueryCluster.THREAD)
        planes = [plane for plane, _, _ in results]
        self.assertEqual(len(planes), len(set(planes)))
        self.assertEqual(set(planes), set(self.expected.keys()))
        self.assertNotIn(MISSING_VALUE, planes)

    def test_matches_brute_force(self):
        results = self.run_query(3, QueryCluster.THREAD)
        self.assertEqual({p: (y, m) for p, y, m in results}, self.expected)

    def test_independent_of_workers(self):
        single = self.run_query(1, QueryCluster.THREAD)
        self.assertEqual(self.run_query(4, QueryCluster.THREAD), single)
        self.assertEqual(self.run_query(3, QueryCluster.PROCESS), single)

    def test_idempotent(self):
        self.assertEqual(self.run_query(2, QueryCluster.THREAD), self.run_query(2, QueryCluster.THREAD))


class TestReport(unittest.TestCase):
    def test_render_keeps_order(self):
        lines = cluster.render_report([(3758, 2008, 4), (3417, 2008, 1)])
        self.assertEqual(lines, ["First flight for: 3758 on: 2008/4",
                                 "First flight for: 3417 on: 2008/1"])

    def test_empty_report(self):
        out = io.StringIO()
        cluster.write_report([], out)
        self.assertEqual(out.getvalue(), "")


if __name__ == '__main__':
    unittest.main()
