'''
    Bigmatrix.py - Out of core access to a flight table

    A table is a descriptor file (json) next to a raw backing file holding
    the matrix in column major order. The backing file is memory mapped
    read only, so any number of workers can attach the same table.
'''
import json
import os

import numpy as np

from flight_query.base import FLIGHT_FIELD_NAMES, FormatError, NotFoundError, create_logger

logger = create_logger()

CHUNK_ROWS = 1 << 20


class TableHandle:
    ''' A read only mapping of one flight table '''

    def __init__(self, descriptor_path, backing_path, data, na_value=None):
        self.descriptor_path = descriptor_path
        self.backing_path = backing_path
        self.na_value = na_value
        self._data = data

    @property
    def nrow(self):
        return self._data.shape[0]

    @property
    def ncol(self):
        return self._data.shape[1]

    @property
    def dtype(self):
        return self._data.dtype

    @property
    def closed(self):
        return self._data is None

    @property
    def data(self):
        if self._data is None:
            raise ValueError('Table %s is closed' % self.descriptor_path)
        return self._data

    def close(self):
        # the mapping is released once the last view of it is gone
        self._data = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return 'TableHandle(%r, nrow=%d)' % (self.descriptor_path, self.nrow if not self.closed else -1)


def descriptor_path(location, input_dir=None):
    ''' Resolve a descriptor name against the input directory '''
    if input_dir is None or os.path.isabs(location):
        return os.path.abspath(location)
    return os.path.abspath(os.path.join(input_dir, location))


def read_descriptor(path):
    if not os.path.isfile(path):
        raise NotFoundError('Table descriptor not found: %s' % path)
    with open(path, 'r') as f:
        try:
            desc = json.load(f)
        except ValueError as e:
            raise FormatError('Unreadable table descriptor %s: %s' % (path, e))
    if not isinstance(desc, dict):
        raise FormatError('Table descriptor %s is not an object' % path)

    for key in ('backingfile', 'nrow', 'ncol', 'type'):
        if key not in desc:
            raise FormatError('Table descriptor %s is missing "%s"' % (path, key))
    if desc['ncol'] != len(FLIGHT_FIELD_NAMES):
        raise FormatError('Table %s has %s columns, expected %d'
                          % (path, desc['ncol'], len(FLIGHT_FIELD_NAMES)))
    colnames = desc.get('colnames')
    if colnames is not None and tuple(colnames) != FLIGHT_FIELD_NAMES:
        raise FormatError('Table %s columns do not match the flight fields' % path)
    if desc.get('order', 'F') != 'F':
        raise FormatError('Table %s is not stored column major' % path)
    if not isinstance(desc['nrow'], int) or desc['nrow'] < 0:
        raise FormatError('Table %s has an invalid row count %r' % (path, desc['nrow']))
    if not isinstance(desc['type'], str):
        raise FormatError('Table %s has an unknown type %r' % (path, desc['type']))
    try:
        kind = np.dtype(desc['type']).kind
    except TypeError:
        raise FormatError('Table %s has an unknown type %r' % (path, desc['type']))
    if kind not in 'iuf':
        raise FormatError('Table %s is not numeric, type %r' % (path, desc['type']))
    return desc


def open_table(location, input_dir=None):
    ''' Attach a table by descriptor without reading it into memory '''
    path = descriptor_path(location, input_dir)
    desc = read_descriptor(path)

    backing = os.path.join(os.path.dirname(path), desc['backingfile'])
    if not os.path.isfile(backing):
        raise NotFoundError('Backing file not found: %s' % backing)

    dtype = np.dtype(desc['type']).newbyteorder('<')
    nrow, ncol = desc['nrow'], desc['ncol']
    expected = nrow * ncol * dtype.itemsize
    size = os.path.getsize(backing)
    if size != expected:
        raise FormatError('Backing file %s has %d bytes, descriptor expects %d'
                          % (backing, size, expected))

    if nrow == 0:
        # mmap can not map an empty file
        data = np.empty((0, ncol), dtype=dtype, order='F')
        data.flags.writeable = False
    else:
        data = np.memmap(backing, dtype=dtype, mode='r', shape=(nrow, ncol), order='F')
    logger.debug('Attached %s (%d rows)' % (path, nrow))
    return TableHandle(path, backing, data, na_value=desc.get('na_value'))


def _check_column(handle, column_index):
    if not 0 <= column_index < handle.ncol:
        raise IndexError('Column %d out of range for %d columns' % (column_index, handle.ncol))


def column(handle, column_index):
    ''' Lazy view of one column, contiguous in the backing file '''
    _check_column(handle, column_index)
    return handle.data[:, column_index]


def filter_rows(handle, column_index, value, chunk_rows=CHUNK_ROWS):
    ''' Row indices where column == value, scanned chunk by chunk '''
    col = column(handle, column_index)
    found = []
    for start in range(0, col.shape[0], chunk_rows):
        chunk = np.asarray(col[start:start + chunk_rows])
        hits = np.flatnonzero(chunk == value)
        if hits.size:
            found.append(hits + start)
    if not found:
        return np.empty(0, dtype=np.intp)
    return np.concatenate(found)


def rows(handle, row_indices, column_indices):
    ''' Dense sub matrix of the given rows and columns, always 2-D '''
    for c in column_indices:
        _check_column(handle, c)
    row_indices = np.asarray(row_indices, dtype=np.intp)
    sub = handle.data[np.ix_(row_indices, list(column_indices))]
    sub = np.array(sub)
    sub.flags.writeable = False
    return sub


def unique_values(handle, column_index, chunk_rows=CHUNK_ROWS):
    ''' Distinct values of a column, sorted ascending '''
    col = column(handle, column_index)
    seen = np.empty(0, dtype=col.dtype)
    for start in range(0, col.shape[0], chunk_rows):
        seen = np.union1d(seen, np.unique(col[start:start + chunk_rows]))
    return seen


def write_table(output_dir, descriptor_name, matrix, dtype=None, na_value=None):
    ''' Store a matrix as backing file + descriptor, returns the descriptor path '''
    matrix = np.asarray(matrix, dtype=dtype)
    if matrix.ndim != 2 or matrix.shape[1] != len(FLIGHT_FIELD_NAMES):
        raise FormatError('Flight tables need %d columns, got shape %r'
                          % (len(FLIGHT_FIELD_NAMES), matrix.shape))
    stem = os.path.splitext(descriptor_name)[0]
    backingfile = stem + '.bin'
    os.makedirs(output_dir, exist_ok=True)
    # column by column keeps the copy bounded to one column of memory
    with open(os.path.join(output_dir, backingfile), 'wb') as f:
        for c in range(matrix.shape[1]):
            f.write(np.ascontiguousarray(matrix[:, c]).astype(matrix.dtype.newbyteorder('<')).tobytes())
    return _write_descriptor(output_dir, descriptor_name, backingfile,
                             matrix.shape[0], matrix.dtype, na_value)


def _write_descriptor(output_dir, descriptor_name, backingfile, nrow, dtype, na_value):
    desc = {
        'backingfile': backingfile,
        'nrow': int(nrow),
        'ncol': len(FLIGHT_FIELD_NAMES),
        'type': np.dtype(dtype).name,
        'colnames': list(FLIGHT_FIELD_NAMES),
        'order': 'F',
        'na_value': na_value,
    }
    path = os.path.join(output_dir, descriptor_name)
    with open(path, 'w') as f:
        json.dump(desc, f, indent=2)
    return path


def replicate(handle, count, output_dir=None, prefix='all_flights_'):
    '''
        Deep copy the table into count independent backing files so workers
        on different nodes do not contend on one file.
        Returns the descriptor names all_flights_1.desc .. all_flights_<count>.desc
    '''
    if count < 1:
        raise ValueError('Replica count should be at least 1')
    if output_dir is None:
        output_dir = os.path.dirname(handle.descriptor_path)
    source_desc = os.path.realpath(handle.descriptor_path)
    source_backing = os.path.realpath(handle.backing_path)
    names = []
    for i in range(1, count + 1):
        name = '%s%d.desc' % (prefix, i)
        backingfile = '%s%d.bin' % (prefix, i)
        target_desc = os.path.realpath(os.path.join(output_dir, name))
        target_backing = os.path.realpath(os.path.join(output_dir, backingfile))
        if target_desc == source_desc:
            # the source table already is this replica
            logger.info('Keeping %s as replica %d' % (handle.descriptor_path, i))
            names.append(name)
            continue
        if target_backing in (source_desc, source_backing):
            raise ValueError('Replica %s would overwrite the table %s'
                             % (target_backing, handle.descriptor_path))
        with open(target_backing, 'wb') as f:
            for c in range(handle.ncol):
                f.write(np.asarray(column(handle, c)).astype(handle.dtype.newbyteorder('<')).tobytes())
        _write_descriptor(output_dir, name, backingfile, handle.nrow, handle.dtype, handle.na_value)
        logger.info('Replicated %s to %s' % (handle.descriptor_path, name))
        names.append(name)
    return names
