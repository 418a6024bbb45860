'''
    Base.py - Holds the shared pieces of the flight query cluster:
    logger, error types, flight table layout constants

'''
import logging
import multiprocessing

import psutil

# Column order of every flight table, fixed by the preprocessing step
FLIGHT_FIELD_NAMES = (
    "Year",
    "Month",
    "DayofMonth",
    "DayOfWeek",
    "DepTime",
    "CRSDepTime",
    "ArrTime",
    "CRSArrTime",
    "UniqueCarrier",
    "FlightNum",
    "TailNum",
    "ActualElapsedTime",
    "CRSElapsedTime",
    "AirTime",
    "ArrDelay",
    "DepDelay",
    "Origin",
    "Dest",
    "Distance",
    "TaxiIn",
    "TaxiOut",
    "Cancelled",
    "CancellationCode",
    "Diverted",
    "CarrierDelay",
    "WeatherDelay",
    "NASDelay",
    "SecurityDelay",
    "LateAircraftDelay")

PLANE_ID_INDEX = FLIGHT_FIELD_NAMES.index("TailNum")
YEAR_INDEX = FLIGHT_FIELD_NAMES.index("Year")
MONTH_INDEX = FLIGHT_FIELD_NAMES.index("Month")

# TailNum code for flights without a plane
MISSING_VALUE = -1

LOG_FORMAT = '%(processName)s - %(process)d\t: %(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = None
def create_logger(log_file=None, level=logging.INFO):
    global logger
    if logger is None:
        multiprocessing.log_to_stderr()
        logger = multiprocessing.get_logger()
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if log_file is not None:
        fh = logging.FileHandler(log_file, mode='w+')
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(fh)
    return logger
create_logger()


def sys_info():
    ''' Memory and cpu usage of the current node, as logged at checkpoints '''
    return "mem %s%% | cpu %ss" % (str(psutil.virtual_memory().percent),
                                   str(psutil.cpu_times().system))


def default_worker_count():
    return psutil.cpu_count() or 1


class FlightQueryError(Exception):
    pass


class NotFoundError(FlightQueryError, FileNotFoundError):
    ''' Table descriptor or backing file does not exist '''
    pass


class FormatError(FlightQueryError, ValueError):
    ''' Table descriptor does not match the flight table layout '''
    pass


class EmptyPartitionError(FlightQueryError, LookupError):
    ''' No usable flight rows for a plane at query time '''
    def __init__(self, plane):
        super(EmptyPartitionError, self).__init__(plane)
        self.plane = plane

    def __str__(self):
        return 'No flights with a date found for plane %s' % str(self.plane)


class WorkerFailure(FlightQueryError, ChildProcessError):
    ''' A dispatched task failed; the task error is chained as __cause__ '''
    def __init__(self, plane_index, plane):
        super(WorkerFailure, self).__init__(plane_index, plane)
        self.plane_index = plane_index
        self.plane = plane

    def __str__(self):
        return 'Task %d for plane %s failed' % (self.plane_index, str(self.plane))
