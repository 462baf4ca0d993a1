import os
import pickle

import numpy
import binstore
from binstore import memory
from binstore.collection import (MemoryCollection, FileCollection,
        PairedCollection, save, open_handle, as_collection)

from numpy.testing import assert_equal, assert_array_equal

COLUMNS = [[1.0, 2.0, 3.0], [], [5.5], [4.0, -1.0]]

def check_columns(collection, columns):
    assert_equal(collection.length(), len(columns))
    assert_equal(len(collection), len(columns))
    assert_array_equal(collection.lengths(), [len(c) for c in columns])
    for i, column in enumerate(columns):
        assert_array_equal(collection.get_column(i), column)
        assert_array_equal(collection[i], column)
        assert_equal(collection.column_length(i), len(column))
    for got, column in zip(collection, columns):
        assert_array_equal(got, column)

def check_not_found(collection):
    for i in [-1, collection.length(), collection.length() + 10]:
        try:
            collection.get_column(i)
        except binstore.NotFound:
            continue
        raise AssertionError("Shall not reach here")

def test_memory():
    c = MemoryCollection(COLUMNS)
    check_columns(c, COLUMNS)
    check_not_found(c)
    assert c.get_column(0).dtype == numpy.dtype('f8')
    assert c.handle() is None
    assert_equal(c.size, 6)

def test_memory_numpy_index():
    c = MemoryCollection(COLUMNS)
    assert_array_equal(c.get_column(numpy.int64(2)), [5.5])
    try:
        c.get_column(1.0)
    except TypeError:
        return
    raise AssertionError("Shall not reach here")

def test_memory_readonly():
    c = MemoryCollection(COLUMNS)
    column = c.get_column(0)
    try:
        column[0] = 10
    except ValueError:
        return
    raise AssertionError("Shall not reach here")

def test_memory_empty():
    c = MemoryCollection([])
    check_columns(c, [])
    check_not_found(c)

def test_memory_not_1d():
    try:
        MemoryCollection([[[1.0]]])
    except ValueError:
        return
    raise AssertionError("Shall not reach here")

def test_memory_shared():
    c = MemoryCollection(COLUMNS, shared=True)
    check_columns(c, COLUMNS)
    assert isinstance(c._arena, memory.anonymousmemmap)

    with binstore.MapReduce(np=2) as pool:
        def work(i):
            return c.get_column(i).sum()
        r = pool.map(work, range(len(c)))
    assert_array_equal(r, [6.0, 0.0, 5.5, 3.0])

def test_from_arena():
    c = MemoryCollection.from_arena([1, 2, 3, 4], [0, 1, 1, 4])
    check_columns(c, [[1], [], [2, 3, 4]])

    for offsets in [[1, 4], [0, 3], [0, 3, 2, 4], [[0, 4]]]:
        try:
            MemoryCollection.from_arena([1, 2, 3, 4], offsets)
        except ValueError:
            continue
        raise AssertionError("Shall not reach here: %s" % offsets)

def test_file(tmp_path):
    path = str(tmp_path / 'columns')
    c = save(path, COLUMNS)
    assert isinstance(c, FileCollection)
    assert os.path.exists(path + '.dat')
    assert os.path.exists(path + '.idx')
    check_columns(c, COLUMNS)
    check_not_found(c)
    assert_equal(c.handle(), {'type': 'file', 'path': path})

    c.close()
    check_columns(c, COLUMNS)

def test_file_from_iterator(tmp_path):
    path = str(tmp_path / 'columns')
    c = save(path, (numpy.arange(i) for i in range(5)))
    check_columns(c, [numpy.arange(i) for i in range(5)])

def test_file_all_empty(tmp_path):
    c = save(str(tmp_path / 'empty'), [[], []])
    check_columns(c, [[], []])
    c = save(str(tmp_path / 'none'), [])
    check_columns(c, [])

def test_file_lazy(tmp_path):
    path = str(tmp_path / 'missing')
    c = FileCollection(path)
    try:
        len(c)
    except binstore.NotFound:
        pass
    else:
        raise AssertionError("Shall not reach here")

    # the files appear later
    save(path, COLUMNS)
    check_columns(c, COLUMNS)

def test_file_truncated(tmp_path):
    path = str(tmp_path / 'columns')
    save(path, COLUMNS)
    with open(path + '.dat', 'r+b') as f:
        f.truncate(8 * 4)
    try:
        FileCollection(path).get_column(0)
    except binstore.NotFound:
        return
    raise AssertionError("Shall not reach here")

def test_file_pickle(tmp_path):
    path = str(tmp_path / 'big')
    c = save(path, [numpy.arange(10000)] * 4)
    c.get_column(0)
    s = pickle.dumps(c)
    # only the handle is pickled
    assert len(s) < 1000
    d = pickle.loads(s)
    assert isinstance(d, FileCollection)
    assert_equal(d.path, path)
    assert_array_equal(d.get_column(3), numpy.arange(10000))

def test_open_handle(tmp_path):
    path = str(tmp_path / 'columns')
    c = save(path, COLUMNS)
    check_columns(open_handle(c.handle()), COLUMNS)
    for handle in [None, {'type': 'hdf5'}]:
        try:
            open_handle(handle)
        except ValueError:
            continue
        raise AssertionError("Shall not reach here")

def test_as_collection():
    c = MemoryCollection(COLUMNS)
    assert as_collection(c) is c
    check_columns(as_collection(COLUMNS), COLUMNS)

def test_paired():
    keys = MemoryCollection(COLUMNS)
    values = MemoryCollection([[10, 20, 30], [], [55], [40, 50]])
    p = PairedCollection(keys, values)
    assert_equal(len(p), 4)
    k, v = p.get_pair_columns(3)
    assert_array_equal(k, [4.0, -1.0])
    assert_array_equal(v, [40, 50])
    try:
        p.get_pair_columns(4)
    except binstore.NotFound:
        return
    raise AssertionError("Shall not reach here")

def test_paired_mismatch():
    keys = MemoryCollection(COLUMNS)
    try:
        PairedCollection(keys, MemoryCollection([[1, 2, 3], [], [5]]))
    except binstore.ShapeMismatch:
        pass
    else:
        raise AssertionError("Shall not reach here")

    values = MemoryCollection([[1, 2, 3], [], [5], [4]])
    try:
        PairedCollection(keys, values)
    except binstore.ShapeMismatch as e:
        assert 'column 3' in str(e)
    else:
        raise AssertionError("Shall not reach here")

    # found on access without validation
    p = PairedCollection(keys, values, validate=False)
    p.get_pair_columns(0)
    try:
        p.get_pair_columns(3)
    except binstore.ShapeMismatch:
        return
    raise AssertionError("Shall not reach here")
