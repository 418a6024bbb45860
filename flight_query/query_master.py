import argparse
import os
import sys
from os import path

from flight_query import bigmatrix
from flight_query.base import FlightQueryError, create_logger, default_worker_count
from flight_query.cluster import QueryCluster
'''
    Query Master.py
    Usage: python -m flight_query.query_master -input [big_matrices] -desc [all.desc] -workers [n]

    -input: {optional} directory holding the table descriptors and backing files
    -desc: {optional} descriptor of the table, 2008.desc runs a short job for testing
    -workers: {optional} number of workers the query is spread over
    -pool: {optional} thread or process workers
    -replicas: {optional} spread tasks over all_flights_1..n.desc
    -make-replicas: {optional} create the replicas before the query
    -output: {optional} file for the report, default is the console
    -log: {optional} also log to this file
'''
DEFAULT_INPUT_DIR = os.environ.get('FLIGHT_QUERY_INPUT_DIR', path.abspath('big_matrices'))
DEFAULT_DESCRIPTOR = os.environ.get('FLIGHT_QUERY_DESCRIPTOR', 'all.desc')
DEFAULT_WORKERS = os.environ.get('FLIGHT_QUERY_WORKERS')

INPUT_DIR = DEFAULT_INPUT_DIR
DESCRIPTOR_NAME = DEFAULT_DESCRIPTOR
NUM_WORKERS = None
POOL = QueryCluster.PROCESS
REPLICAS = []
OUTPUT = None

logger = create_logger()


def set_input_dir(parser, args):
    ''' Check if input directory is valid '''
    global INPUT_DIR
    INPUT_DIR = args.dir if args.dir is not None else DEFAULT_INPUT_DIR
    if not path.isdir(INPUT_DIR):
        parser.error("Input directory %s not found, please enter the path to the table storage" % INPUT_DIR)
    INPUT_DIR = path.abspath(INPUT_DIR)


def set_descriptor(parser, args):
    global DESCRIPTOR_NAME
    DESCRIPTOR_NAME = args.desc if args.desc is not None else DEFAULT_DESCRIPTOR


def set_num_workers(parser, args):
    ''' Check if valid number of workers '''
    global NUM_WORKERS
    if args.workers is not None:
        NUM_WORKERS = args.workers
    elif DEFAULT_WORKERS:
        try:
            NUM_WORKERS = int(DEFAULT_WORKERS)
        except ValueError:
            parser.error('FLIGHT_QUERY_WORKERS should be a number, got %r' % DEFAULT_WORKERS)
    else:
        NUM_WORKERS = default_worker_count()
    if NUM_WORKERS < 1:
        parser.error('Query should run on at least 1 worker')


def set_pool(parser, args):
    global POOL
    POOL = args.pool if args.pool is not None else QueryCluster.PROCESS


def set_replicas(parser, args):
    ''' Replica descriptors all_flights_1..n.desc, made first on request '''
    global REPLICAS
    REPLICAS = []
    if args.replicas is None:
        if args.make_replicas:
            parser.error('-make-replicas needs -replicas')
        return
    if args.replicas < 1:
        parser.error('Replica count should be at least 1')
    if args.make_replicas:
        with bigmatrix.open_table(DESCRIPTOR_NAME, INPUT_DIR) as handle:
            REPLICAS = bigmatrix.replicate(handle, args.replicas, output_dir=INPUT_DIR)
    else:
        REPLICAS = ['all_flights_%d.desc' % i for i in range(1, args.replicas + 1)]
        for name in REPLICAS:
            if not path.isfile(path.join(INPUT_DIR, name)):
                parser.error("Replica %s not found, run with -make-replicas" % name)


def set_output(parser, args):
    global OUTPUT
    OUTPUT = None
    if args.output is not None:
        out_dir = path.dirname(path.abspath(args.output))
        if not path.isdir(out_dir):
            parser.error("Output directory %s not found" % out_dir)
        OUTPUT = args.output


def get_parser():
    parser = argparse.ArgumentParser(
        prog="Flight Query", description="Distributed query for the first flight of every plane")
    parser.add_argument("-input", dest="dir", action="store", type=str,
                        help="Directory holding the flight table descriptors and backing files")
    parser.add_argument("-desc", dest="desc", action="store", type=str,
                        help="Table descriptor name, e.g. all.desc or 2008.desc")
    parser.add_argument("-workers", dest="workers", action="store", type=int,
                        help="Number of workers")
    parser.add_argument("-pool", dest="pool", action="store",
                        choices=(QueryCluster.THREAD, QueryCluster.PROCESS),
                        help="Run tasks on threads or processes")
    parser.add_argument("-replicas", dest="replicas", action="store", type=int,
                        help="Spread tasks over this many table replicas")
    parser.add_argument("-make-replicas", dest="make_replicas", action="store_true",
                        help="Create the table replicas before the query")
    parser.add_argument("-output", dest="output", action="store", type=str,
                        help="Write the report to this file instead of the console")
    parser.add_argument("-log", dest="log", action="store", type=str,
                        help="Also log to this file")
    return parser


def main(argv=None):
    parser = get_parser()
    args = parser.parse_args(argv)
    if args.log is not None:
        create_logger(args.log)

    # Start only if all configuration is valid
    try:
        set_input_dir(parser, args)
        set_descriptor(parser, args)
        set_num_workers(parser, args)
        set_pool(parser, args)
        set_output(parser, args)
        set_replicas(parser, args)

        cluster = QueryCluster(INPUT_DIR, DESCRIPTOR_NAME, NUM_WORKERS, pool=POOL, replicas=REPLICAS)
        cluster.start()
    except FlightQueryError as e:
        logger.error('Flight query failed: %s' % e)
        sys.exit(e)

    if OUTPUT is None:
        cluster.report()
    else:
        with open(OUTPUT, 'w') as out:
            cluster.report(out)
        logger.info('Report written to %s' % OUTPUT)
    return 0


if __name__ == "__main__":
    main()
