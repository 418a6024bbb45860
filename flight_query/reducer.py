import numpy as np

from flight_query import bigmatrix
from flight_query.base import (EmptyPartitionError, MONTH_INDEX, PLANE_ID_INDEX,
                               YEAR_INDEX, create_logger)

logger = create_logger()

# Handles attached by this process, key: descriptor path
_attached = {}


def attach(location, input_dir=None):
    ''' Attach a table once per process and reuse it for later tasks '''
    path = bigmatrix.descriptor_path(location, input_dir)
    handle = _attached.get(path)
    if handle is None or handle.closed:
        handle = bigmatrix.open_table(path)
        _attached[path] = handle
    return handle


def detach_all():
    for handle in _attached.values():
        handle.close()
    _attached.clear()


def present(values, na_value=None):
    ''' Values with NaN and the table's missing marker removed '''
    values = np.asarray(values)
    keep = ~np.isnan(values) if values.dtype.kind == 'f' else np.ones(values.shape, dtype=bool)
    if na_value is not None:
        keep &= values != na_value
    return values[keep]


def min_present(values, plane, na_value=None):
    values = present(values, na_value)
    if values.size == 0:
        raise EmptyPartitionError(plane)
    return values.min()


def earliest_date(flight_dates, plane, na_value=None):
    '''
        Earliest (year, month) in a 2 column [year, month] matrix.
        The month is the smallest one inside the earliest year only.
    '''
    years = flight_dates[:, 0]
    months = flight_dates[:, 1]
    min_year = min_present(years, plane, na_value)
    dates_in_first_year = np.flatnonzero(years == min_year)
    min_month = min_present(months[dates_in_first_year], plane, na_value)
    return int(min_year), int(min_month)


def first_flight(handle, plane):
    ''' (plane, year, month) of the first flight of one plane '''
    flight_rows = bigmatrix.filter_rows(handle, PLANE_ID_INDEX, plane)
    if flight_rows.size == 0:
        raise EmptyPartitionError(plane)
    flight_dates = bigmatrix.rows(handle, flight_rows, (YEAR_INDEX, MONTH_INDEX))
    min_year, min_month = earliest_date(flight_dates, plane, handle.na_value)
    return int(plane), min_year, min_month
