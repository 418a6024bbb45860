import sys
import time
from multiprocessing import Pool
from multiprocessing.dummy import Pool as ThreadPool

import numpy as np

from flight_query import bigmatrix, reducer
from flight_query.base import (MISSING_VALUE, PLANE_ID_INDEX, WorkerFailure,
                               create_logger, default_worker_count, sys_info)

logger = create_logger()

REPORT_LINE = "First flight for: %d on: %d/%d"


def run_task(task):
    ''' Worker side of the fan out: attach the table, reduce one plane '''
    plane_index, plane, location = task
    logger.info('Plane: %d: %s' % (plane_index, str(plane)))
    handle = reducer.attach(location)
    return reducer.first_flight(handle, plane)


def render_report(results):
    return [REPORT_LINE % (plane, year, month) for plane, year, month in results]


def write_report(results, out=None):
    if out is None:
        out = sys.stdout
    for line in render_report(results):
        out.write(line + "\n")


class QueryCluster:
    # Run States
    INIT = 1
    KEYS_COMPUTED = 2
    DISPATCHED = 3
    COLLECTED = 4
    EMITTED = 5

    # Pool Kinds
    THREAD = 'thread'
    PROCESS = 'process'

    def __init__(self, input_dir, descriptor_name, worker_num=None, pool=PROCESS, replicas=None):
        if pool not in (self.THREAD, self.PROCESS):
            raise ValueError('Unknown pool kind %r' % pool)
        if worker_num is None:
            worker_num = default_worker_count()
        if worker_num < 1:
            raise ValueError('Cluster needs at least 1 worker')

        self.input_dir = input_dir
        self.descriptor_name = descriptor_name
        self.worker_num = worker_num
        self.pool_kind = pool
        self.replicas = list(replicas) if replicas else []

        self.status = self.INIT
        self.planes = None
        self.results = None
        self.timings = {}

    def location(self, plane_index):
        ''' Descriptor for task plane_index (1 based), round robin over replicas '''
        if self.replicas:
            name = self.replicas[(plane_index - 1) % len(self.replicas)]
        else:
            name = self.descriptor_name
        return bigmatrix.descriptor_path(name, self.input_dir)

    def partition_keys(self, handle):
        ''' Distinct planes in the table, missing value discarded '''
        planes = bigmatrix.unique_values(handle, PLANE_ID_INDEX)
        planes = planes[planes != MISSING_VALUE]
        if planes.dtype.kind == 'f':
            planes = planes[~np.isnan(planes)]
        return planes

    def attach(self):
        start_time = time.time()
        if self.pool_kind == self.THREAD:
            # threads share the process wide handle with the tasks
            handle = reducer.attach(self.descriptor_name, self.input_dir)
        else:
            handle = bigmatrix.open_table(self.descriptor_name, self.input_dir)
        self.timings['attach'] = time.time() - start_time
        logger.info('Attach all flights matrix duration/sec: %f' % self.timings['attach'])
        return handle

    def count_planes(self, handle):
        start_time = time.time()
        self.planes = self.partition_keys(handle)
        self.status = self.KEYS_COMPUTED
        self.timings['plane_count'] = time.time() - start_time
        logger.info('Found %d planes, plane count duration/sec: %f'
                    % (len(self.planes), self.timings['plane_count']))
        return self.planes

    def make_pool(self):
        if self.pool_kind == self.THREAD:
            return ThreadPool(self.worker_num)
        return Pool(self.worker_num)

    def dispatch(self, planes):
        '''
            Fan out one task per plane and collect the triples in submission
            order. The first failed task aborts the whole query.
        '''
        tasks = [(i, plane, self.location(i)) for i, plane in enumerate(planes, 1)]
        results = []
        logger.info('Dispatching %d tasks to %d %s workers (%s)'
                    % (len(tasks), self.worker_num, self.pool_kind, sys_info()))
        with self.make_pool() as pool:
            collected = pool.imap(run_task, tasks)
            self.status = self.DISPATCHED
            for plane_index, plane, _ in tasks:
                try:
                    results.append(next(collected))
                except Exception as e:
                    logger.error('Plane %d: %s failed: %r' % (plane_index, str(plane), e))
                    raise WorkerFailure(plane_index, plane) from e
        return results

    def start(self):
        ''' Run the query, returns the (plane, year, month) triples '''
        handle = self.attach()
        planes = self.count_planes(handle)

        if self.pool_kind == self.PROCESS:
            # workers attach their own copy, nothing to keep on the master
            handle.close()
            del handle

        start_time = time.time()
        self.results = self.dispatch(planes)
        self.status = self.COLLECTED
        self.timings['query'] = time.time() - start_time
        logger.info('Query duration/sec: %f (%s)' % (self.timings['query'], sys_info()))
        return self.results

    def report(self, out=None):
        if self.status != self.COLLECTED:
            raise RuntimeError('Query results are not collected yet')
        write_report(self.results, out)
        self.status = self.EMITTED
