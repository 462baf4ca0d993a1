import json

import numpy
import binstore
from binstore import BinnedStore, MemoizedStore, TaskFailure
from binstore.collection import MemoryCollection, FileCollection, save
from binstore.pool import MapReduce, MapReduceByThread, NetworkedPool

from numpy.testing import assert_equal, assert_array_equal

def random_columns(seed=0, ncolumns=12):
    rng = numpy.random.RandomState(seed)
    keys = []
    values = []
    for i in range(ncolumns):
        n = rng.randint(1, 200)
        keys.append(rng.uniform(0, 20, size=n))
        values.append(rng.uniform(0, 1000, size=n))
    # one empty column
    keys[3] = []
    values[3] = []
    return keys, values

def random_store(**kwargs):
    keys, values = random_columns()
    kwargs.setdefault('step', 0.5)
    kwargs.setdefault('tolerance', 0.3)
    return BinnedStore(keys, values, **kwargs)

def test_worked_example():
    store = BinnedStore([[1.0, 2.0, 3.0]], [[10, 20, 30]],
            bin_axis=[1.5, 2.5], tolerance=0.5, combiner='sum')
    assert_equal(store.shape, (2, 1))
    assert_array_equal(store.get_column(0), [30, 50])
    assert_equal(store.get_cell(0, 0), 30)
    assert_equal(store.get_cell(1, 0), 50)
    assert_array_equal(store.get_row(1), [50])

def test_empty_column():
    for tolerance in [0.0, 0.5, 100.0]:
        store = BinnedStore([[]], [[]], bin_axis=[1.0, 2.0, 3.0],
                tolerance=tolerance, fill=numpy.nan)
        assert numpy.isnan(store.get_column(0)).all()
        for r in range(3):
            assert numpy.isnan(store.get_cell(r, 0))

def test_tolerance_zero():
    store = BinnedStore([[1.0, 2.0, 2.0, 3.5]], [[1, 2, 4, 8]],
            bin_axis=[1.0, 2.0, 3.0], tolerance=0.0)
    assert_array_equal(store.get_column(0), [1, 6, 0])
    assert_equal(store.get_cell(2, 0), 0)

    store = BinnedStore([[1.1, 2.2]], [[1, 2]], bin_axis=[1.0, 2.0, 3.0],
            tolerance=0.0, fill=-1)
    assert_array_equal(store.get_column(0), [-1, -1, -1])

    store = BinnedStore([[1.1, 2.2]], [[1, 2]], bin_axis=[1.0, 2.0, 3.0],
            tolerance=0.0, fill=numpy.nan)
    column = store.get_column(0)
    assert column.dtype == numpy.dtype('f8')
    assert numpy.isnan(column).all()
    assert numpy.isnan(store.memoize().get_cell(1, 0))

def test_boundary():
    store = BinnedStore([[1.5]], [[7.0]], bin_axis=[1.0, 2.0], tolerance=0.5)
    assert_array_equal(store.get_column(0), [7.0, 7.0])
    assert_equal(store.get_cell(0, 0), 7.0)
    assert_equal(store.get_cell(1, 0), 7.0)

def test_deterministic():
    store = random_store()
    for c in range(store.shape[1]):
        for r in [0, 7, store.shape[0] - 1]:
            assert_equal(store.get_cell(r, c), store.get_cell(r, c))
        assert_array_equal(store.get_column(c), store.get_column(c))

def test_column_agrees_with_cells():
    for kwargs in [dict(), dict(combiner='mean', fill=numpy.nan),
            dict(combiner='max', tolerance=1.2),
            dict(bin_axis=numpy.sort(numpy.random.RandomState(3).uniform(0, 20, 50)),
                step=None, combiner='min')]:
        store = random_store(**kwargs)
        R, C = store.shape
        for c in range(C):
            cells = [store.get_cell(r, c) for r in range(R)]
            assert_array_equal(store.get_column(c), cells)
        for r in range(0, R, 5):
            assert_array_equal(store.get_row(r),
                    [store.get_column(c)[r] for c in range(C)])

def test_derived_axis():
    store = BinnedStore([[0.5, 2.0], [1.0, 3.0]], [[1, 1], [1, 1]], step=0.5)
    assert_array_equal(store.axis.centers, [0.5, 1.0, 1.5, 2.0, 2.5, 3.0])
    assert_equal(store.axis.derived, (0.5, 3.0, 0.5))

    store = BinnedStore([[0.5, 2.0], [1.0, numpy.nan]], [[1, 1], [1, 1]],
            start=0, step=1.0)
    assert_array_equal(store.axis.centers, [0.0, 1.0, 2.0])

    try:
        BinnedStore([[], [numpy.nan]], [[], [1]], step=1.0)
    except binstore.InvalidBinAxis:
        return
    raise AssertionError("Shall not reach here")

def test_shape_mismatch():
    try:
        BinnedStore([[1.0, 2.0]], [[1.0]], bin_axis=[1.0])
    except binstore.ShapeMismatch:
        pass
    else:
        raise AssertionError("Shall not reach here")
    try:
        BinnedStore([[1.0], [2.0]], [[1.0]], bin_axis=[1.0])
    except binstore.ShapeMismatch:
        return
    raise AssertionError("Shall not reach here")

def test_invalid_axis():
    for kwargs in [dict(bin_axis=[5, 3, 4]), dict(bin_axis=[]), dict(),
            dict(bin_axis=[1, 2, 2]), dict(step=-1.0)]:
        try:
            BinnedStore([[1.0]], [[1.0]], **kwargs)
        except binstore.InvalidBinAxis:
            continue
        raise AssertionError("Shall not reach here: %s" % kwargs)

    try:
        BinnedStore([[1.0]], [[1.0]], bin_axis=[1.0], step=1.0)
    except ValueError:
        return
    raise AssertionError("Shall not reach here")

def test_invalid_tolerance():
    try:
        BinnedStore([[1.0]], [[1.0]], bin_axis=[1.0], tolerance=-0.1)
    except ValueError:
        return
    raise AssertionError("Shall not reach here")

def test_index_out_of_range():
    store = BinnedStore([[1.0, 2.0, 3.0]], [[10, 20, 30]],
            bin_axis=[1.5, 2.5], tolerance=0.5)
    for r, c in [(-1, 0), (2, 0), (0, -1), (0, 1)]:
        try:
            store.get_cell(r, c)
        except binstore.IndexOutOfRange:
            continue
        raise AssertionError("Shall not reach here: %d %d" % (r, c))
    for call, i in [(store.get_column, 1), (store.get_column, -1),
            (store.get_row, 2), (store.get_row, -1)]:
        try:
            call(i)
        except binstore.IndexOutOfRange:
            continue
        raise AssertionError("Shall not reach here")

def test_relative():
    store = BinnedStore([[100.5, 101.5, 199.0, 202.5]], [[1.0, 2.0, 4.0, 8.0]],
            bin_axis=[100.0, 200.0], tolerance=0.01, tolerance_type='relative')
    assert_array_equal(store.get_column(0), [1.0, 4.0])

def test_file_backed(tmp_path):
    keys, values = random_columns()
    save(str(tmp_path / 'keys'), keys)
    save(str(tmp_path / 'values'), values)
    a = BinnedStore(FileCollection(str(tmp_path / 'keys')),
            FileCollection(str(tmp_path / 'values')), step=0.5, tolerance=0.3)
    b = random_store()
    assert_equal(a.shape, b.shape)
    assert_array_equal(a.todense(), b.todense())

def test_todense():
    store = random_store()
    dense = store.todense()
    R, C = store.shape
    assert_equal(dense.shape, (R, C))
    for c in range(C):
        assert_array_equal(dense[:, c], store.get_column(c))

    part = store.todense(columns=[5, 1])
    assert_array_equal(part, dense[:, [5, 1]])
    assert_equal(store.todense(columns=[]).shape, (R, 0))

    try:
        store.todense(columns=[C])
    except binstore.IndexOutOfRange:
        return
    raise AssertionError("Shall not reach here")

def test_todense_parallel():
    store = random_store(combiner='mean')
    expect = store.todense()
    for pool in [MapReduce(np=0), MapReduceByThread(np=4), MapReduce(np=4),
            NetworkedPool(np=2)]:
        with pool:
            dense = store.todense(pool=pool)
        assert type(dense) is numpy.ndarray
        assert_array_equal(dense, expect)

def test_todense_shared_collection():
    keys, values = random_columns()
    store = BinnedStore(MemoryCollection(keys, shared=True),
            MemoryCollection(values, shared=True), step=0.5, tolerance=0.3)
    with MapReduce(np=4) as pool:
        dense = store.todense(pool=pool)
    assert_array_equal(dense, random_store().todense())

def peak(column):
    return int(numpy.argmax(column))

def fragile_peak(column):
    if column.max() == 0:
        raise ValueError("no signal")
    return peak(column)

def test_map_columns():
    store = random_store()
    expect = [peak(store.get_column(c)) for c in range(store.shape[1])]
    assert_equal(store.map_columns(peak), expect)
    for pool in [MapReduceByThread(np=3), MapReduce(np=3), NetworkedPool(np=2)]:
        with pool:
            assert_equal(store.map_columns(peak, pool=pool), expect)
            assert_equal(store.map_columns(peak, pool=pool, columns=[4, 0]),
                    [expect[4], expect[0]])

def test_map_columns_failure():
    # column 3 is empty
    store = random_store()
    for pool in [MapReduce(np=0), MapReduce(np=3), NetworkedPool(np=2)]:
        with pool:
            r = store.map_columns(fragile_peak, pool=pool)
        assert isinstance(r[3], TaskFailure)
        assert_equal(r[3].index, 3)
        assert isinstance(r[3].reason, ValueError)
        assert_equal(r[4], peak(store.get_column(4)))

    with MapReduce(np=3) as pool:
        try:
            store.map_columns(fragile_peak, pool=pool, errors='raise')
        except binstore.SlaveException as e:
            assert isinstance(e.reason, ValueError)
            return
    raise AssertionError("Shall not reach here")

def test_memoize():
    store = random_store()
    memo = store.memoize()
    assert isinstance(memo, MemoizedStore)
    assert_equal(memo.shape, store.shape)
    assert_equal(memo.cached(), [])

    column = memo.get_column(2)
    assert_array_equal(column, store.get_column(2))
    assert memo.get_column(2) is column
    assert_equal(memo.cached(), [2])
    assert_equal(memo.get_cell(4, 5), store.get_cell(4, 5))
    assert_equal(memo.cached(), [2, 5])

    assert_array_equal(memo.get_row(3), store.get_row(3))
    assert_equal(memo.cached(), list(range(store.shape[1])))

    memo.clear()
    assert_equal(memo.cached(), [])

    try:
        memo.get_cell(store.shape[0], 0)
    except binstore.IndexOutOfRange:
        return
    raise AssertionError("Shall not reach here")

def test_config(tmp_path):
    keys, values = random_columns()
    k = save(str(tmp_path / 'keys'), keys)
    v = save(str(tmp_path / 'values'), values)
    store = BinnedStore(k, v, step=0.5, tolerance=0.01, combiner='max',
            tolerance_type='relative', fill=numpy.nan)

    path = str(tmp_path / 'store.json')
    store.save_config(path)
    config = binstore.load_config(path)
    assert_equal(config['combiner'], 'max')
    assert_equal(config['keys'], {'type': 'file', 'path': str(tmp_path / 'keys')})
    assert 'step' in config['axis']

    again = BinnedStore.load(path)
    assert_equal(again.shape, store.shape)
    assert_equal(again.tolerance_type, 'relative')
    assert again.axis == store.axis
    assert_array_equal(again.todense(), store.todense())

def test_config_explicit_axis():
    store = BinnedStore([[1.0, 2.0, 3.0]], [[10, 20, 30]],
            bin_axis=[1.5, 2.5], tolerance=0.5, combiner='count')
    config = json.loads(json.dumps(store.get_config()))
    assert_equal(config['axis'], {'centers': [1.5, 2.5]})
    assert config['keys'] is None

    try:
        BinnedStore.from_config(config)
    except ValueError:
        pass
    else:
        raise AssertionError("Shall not reach here")

    again = BinnedStore.from_config(config, keys=store.keys, values=store.values)
    assert_array_equal(again.get_column(0), [2, 2])

def test_config_callable_combiner():
    store = BinnedStore([[1.0]], [[1.0]], bin_axis=[1.0], combiner=numpy.median)
    try:
        store.get_config()
    except ValueError:
        return
    raise AssertionError("Shall not reach here")
