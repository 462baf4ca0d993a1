"""
    A read-only matrix view over ragged keyed columns.

    :py:class:`BinnedStore` presents C columns of (key, value) pairs, of any
    lengths and with unaligned keys, as a matrix of shape (R, C) whose rows
    are the centers of a bin axis. Nothing is computed until a cell, a row or
    a column is requested, and nothing computed is kept: use
    :py:meth:`BinnedStore.memoize` to keep the columns that have been binned.

    Examples
    --------

    >>> store = BinnedStore(mz, intensity, step=0.01, tolerance=0.005)
    >>> store.shape
    >>> spectrum = store.get_column(0)

    Bin all columns with 8 processes; the workers write into shared memory.

    >>> with binstore.MapReduce(np=8) as pool:
    >>>     dense = store.todense(pool=pool)

    Smooth every spectrum; a column that fails does not stop the others.

    >>> with binstore.MapReduce() as pool:
    >>>     r = store.map_columns(smooth, pool=pool)
    >>> failed = [f.index for f in r if isinstance(f, binstore.TaskFailure)]

"""
__all__ = ['BinnedStore', 'MemoizedStore', 'bin_column', 'load_config']

import json
import operator

import numpy

from . import memory
from .binning import BinAxis, COMBINERS, make_spec, bin_column, bin_cell
from .collection import as_collection, open_handle, PairedCollection
from .exceptions import IndexOutOfRange, InvalidBinAxis
from .pool import MapReduce, NetworkedPool, ProcessBackend

def _key_range(keys):
    lo, hi = numpy.inf, -numpy.inf
    for column in keys:
        column = numpy.asarray(column)
        column = column[numpy.isfinite(column)]
        if len(column) > 0:
            lo = min(lo, column.min())
            hi = max(hi, column.max())
    if lo > hi:
        raise InvalidBinAxis("there are no finite keys to derive the bin axis from")
    return lo, hi

def _bin_task(spec, keys, values, transform=None):
    column = bin_column(spec, keys, values)
    if transform is not None:
        return transform(column)
    return column

class _ColumnTasks(object):
    # the items of a networked map: only the spec and
    # the raw data of one column are sent per task.
    def __init__(self, store, columns, transform):
        self.store = store
        self.columns = columns
        self.transform = transform

    def __len__(self):
        return len(self.columns)

    def __getitem__(self, j):
        keys, values = self.store._columns.get_pair_columns(self.columns[j])
        return (self.store.spec(), numpy.asarray(keys), numpy.asarray(values),
                self.transform)

class BinnedStore(object):
    """
        A matrix of binned columns, evaluated on access.

        Parameters
        ----------
        keys, values : KeyedCollection or sequence of array_like
            The keys and the values of the columns; the i-th columns of both
            have the same length. Sequences are copied into a
            :py:class:`binstore.collection.MemoryCollection`.

        bin_axis : array_like or BinAxis, optional
            The bin centers, strictly increasing.

        tolerance : float
            The half width of the window around a center. 0 matches
            keys equal to the center only.

        combiner : str or callable
            'sum', 'mean', 'min', 'max', 'count', or reduce(values) -> scalar.

        start, stop, step : float, optional
            Derive an evenly spaced axis from start to stop, if bin_axis is not
            given. start and stop default to the smallest and the largest key of
            all columns.

        tolerance_type : 'absolute' or 'relative'
            With 'relative' the window around center c is :code:`tolerance * |c|`.

        fill : float
            The value of a bin without values.

        Attributes
        ----------
        shape : (R, C)
        axis : BinAxis

        Raises
        ------
        ShapeMismatch
            if keys and values disagree on the number of columns or on the
            length of a column.
        InvalidBinAxis
            if the axis is empty, not finite or not strictly increasing, or if
            neither bin_axis nor step is given.

        Notes
        -----
        The store never changes after construction. Concurrent reads are safe
        as long as the collections are; all collections of
        :py:mod:`binstore.collection` are.

        A key whose distance to two centers both equal the tolerance
        contributes to both bins.

    """
    def __init__(self, keys, values, bin_axis=None, tolerance=0.0, combiner='sum',
            start=None, stop=None, step=None, tolerance_type='absolute', fill=0.0):
        keys = as_collection(keys)
        values = as_collection(values)
        self._columns = PairedCollection(keys, values)

        if bin_axis is not None:
            if step is not None or start is not None or stop is not None:
                raise ValueError("give either bin_axis or start, stop and step, not both")
            axis = bin_axis if isinstance(bin_axis, BinAxis) else BinAxis(bin_axis)
        elif step is not None:
            if start is None or stop is None:
                lo, hi = _key_range(keys)
                if start is None: start = lo
                if stop is None: stop = hi
            axis = BinAxis.from_range(start, stop, step)
        else:
            raise InvalidBinAxis("either bin_axis or step is required")

        self._spec = make_spec(axis, tolerance, tolerance_type, combiner, fill)

    @property
    def shape(self):
        return len(self._spec.axis), self._columns.length()

    @property
    def axis(self):
        return self._spec.axis

    @property
    def tolerance(self):
        return self._spec.tolerance

    @property
    def tolerance_type(self):
        return self._spec.tolerance_type

    @property
    def combiner(self):
        return self._spec.combiner

    @property
    def fill(self):
        return self._spec.fill

    @property
    def keys(self):
        return self._columns.keys

    @property
    def values(self):
        return self._columns.values

    def spec(self):
        """ The :py:class:`binstore.binning.BinSpec` of the store. """
        return self._spec

    def __repr__(self):
        return 'BinnedStore(shape=%r, tolerance=%g (%s), combiner=%r)' % (
                self.shape, self.tolerance, self.tolerance_type, self.combiner.name)

    def _check_row(self, r):
        r = operator.index(r)
        R = len(self._spec.axis)
        if r < 0 or r >= R:
            raise IndexOutOfRange("row %d is not in [0, %d)" % (r, R))
        return r

    def _check_column(self, c):
        c = operator.index(c)
        C = self._columns.length()
        if c < 0 or c >= C:
            raise IndexOutOfRange("column %d is not in [0, %d)" % (c, C))
        return c

    def _check_columns(self, columns):
        if columns is None:
            return list(range(self._columns.length()))
        return [self._check_column(c) for c in columns]

    def get_cell(self, r, c):
        """ The combined values of column c within the window of bin r.

            Returns the fill value if no key of the column is in the window.

            Raises
            ------
            IndexOutOfRange
        """
        r = self._check_row(r)
        c = self._check_column(c)
        keys, values = self._columns.get_pair_columns(c)
        return bin_cell(self._spec, keys, values, r)

    def get_column(self, c):
        """ All R bins of column c, as a float64 array.

            The column is binned in one pass over its items.

            Raises
            ------
            IndexOutOfRange
        """
        c = self._check_column(c)
        keys, values = self._columns.get_pair_columns(c)
        return bin_column(self._spec, keys, values)

    def get_row(self, r):
        """ Bin r of every column, as a float64 array of length C.

            This reads all columns.
        """
        r = self._check_row(r)
        row = numpy.empty(self._columns.length(), dtype='f8')
        for c in range(len(row)):
            keys, values = self._columns.get_pair_columns(c)
            row[c] = bin_cell(self._spec, keys, values, r)
        return row

    def todense(self, pool=None, columns=None):
        """ Materialize the matrix, or the given columns of it.

            Parameters
            ----------
            pool : MapReduce or NetworkedPool, optional
                bins the columns in parallel; shall be entered ('with') by
                the caller. Default is sequential.
            columns : sequence of int, optional
                the columns to bin. Default is all columns.

            Returns
            -------
            dense : ndarray
                of shape (R, len(columns)).

        """
        columns = self._check_columns(columns)
        shape = (len(self._spec.axis), len(columns))

        if pool is None:
            dense = numpy.empty(shape, dtype='f8')
            for j, c in enumerate(columns):
                dense[:, j] = self.get_column(c)
            return dense

        if isinstance(pool, MapReduce):
            if pool.backend is ProcessBackend:
                output = memory.empty(shape, dtype='f8')
            else:
                output = numpy.empty(shape, dtype='f8')
            def work(j):
                output[:, j] = self.get_column(columns[j])
            pool.map(work, range(len(columns)))
            return numpy.array(output)

        dense = numpy.empty(shape, dtype='f8')
        for j, column in enumerate(self._map(pool, columns, None, 'raise')):
            dense[:, j] = column
        return dense

    def map_columns(self, transform, pool=None, columns=None, errors='collect'):
        """ Apply a transform to each binned column.

            Parameters
            ----------
            transform : callable
                transform(column) -> anything; column is the float64 array
                returned by :py:meth:`get_column`. With a NetworkedPool it
                shall be picklable.
            pool : MapReduce or NetworkedPool, optional
                shall be entered ('with') by the caller. Default is sequential.
            columns : sequence of int, optional
                Default is all columns.
            errors : 'collect' or 'raise'
                see :py:meth:`binstore.pool.MapReduce.map`.

            Returns
            -------
            results : list
                in the order of columns. With errors='collect', a failed
                column holds a :py:class:`binstore.pool.TaskFailure` whose
                index is the position in columns.

        """
        columns = self._check_columns(columns)
        if pool is None:
            pool = MapReduce(np=0)
        return self._map(pool, columns, transform, errors)

    def _map(self, pool, columns, transform, errors):
        if isinstance(pool, NetworkedPool):
            tasks = _ColumnTasks(self, columns, transform)
            return pool.map(_bin_task, tasks, star=True, errors=errors)

        def work(c):
            column = self.get_column(c)
            if transform is not None:
                return transform(column)
            return column
        return pool.map(work, columns, errors=errors)

    def memoize(self):
        """ A :py:class:`MemoizedStore` over this store. """
        return MemoizedStore(self)

    def get_config(self):
        """ The configuration of the store, as a json friendly dict.

            The collections are recorded by their handles, which are None for
            collections that can not be reopened (e.g. in memory).

            Raises
            ------
            ValueError
                if the combiner is not one of the named combiners.
        """
        combiner = self._spec.combiner
        if COMBINERS.get(combiner.name) is not combiner:
            raise ValueError("combiner %r has no name and can not be saved" % (combiner,))
        axis = self._spec.axis
        if axis.derived is not None:
            start, stop, step = axis.derived
            axisconfig = {'start': start, 'stop': stop, 'step': step}
        else:
            axisconfig = {'centers': axis.centers.tolist()}
        return {
            'axis': axisconfig,
            'tolerance': self._spec.tolerance,
            'tolerance_type': self._spec.tolerance_type,
            'combiner': combiner.name,
            'fill': self._spec.fill,
            'keys': self.keys.handle(),
            'values': self.values.handle(),
        }

    @classmethod
    def from_config(kls, config, keys=None, values=None):
        """ Rebuild a store from :py:meth:`get_config`.

            keys and values replace the collections recorded in config;
            the recorded ones are reopened otherwise.
        """
        if keys is None:
            keys = open_handle(config['keys'])
        if values is None:
            values = open_handle(config['values'])
        axisconfig = config['axis']
        if 'centers' in axisconfig:
            axis = BinAxis(axisconfig['centers'])
        else:
            axis = BinAxis.from_range(axisconfig['start'], axisconfig['stop'],
                    axisconfig['step'])
        return kls(keys, values, bin_axis=axis,
                tolerance=config['tolerance'],
                tolerance_type=config.get('tolerance_type', 'absolute'),
                combiner=config['combiner'],
                fill=config.get('fill', 0.0))

    def save_config(self, path):
        """ Write :py:meth:`get_config` to a json file. """
        with open(path, 'w') as f:
            json.dump(self.get_config(), f, indent=2)

    @classmethod
    def load(kls, path, keys=None, values=None):
        """ Rebuild a store from a json file written by :py:meth:`save_config`. """
        return kls.from_config(load_config(path), keys=keys, values=values)

def load_config(path):
    """ Read a store configuration written by :py:meth:`BinnedStore.save_config`. """
    with open(path, 'r') as f:
        return json.load(f)

class MemoizedStore(object):
    """ A store that keeps the columns it has binned.

        The cache belongs to this object only; it grows with every column
        read until :py:meth:`clear`. Cells and rows are answered from the
        binned columns, thus :py:meth:`get_row` bins every column once.

        Parameters
        ----------
        store : BinnedStore

    """
    def __init__(self, store):
        self.store = store
        self._cache = {}

    @property
    def shape(self):
        return self.store.shape

    @property
    def axis(self):
        return self.store.axis

    def get_column(self, c):
        c = self.store._check_column(c)
        column = self._cache.get(c)
        if column is None:
            column = self.store.get_column(c)
            column.flags.writeable = False
            self._cache[c] = column
        return column

    def get_cell(self, r, c):
        r = self.store._check_row(r)
        return float(self.get_column(c)[r])

    def get_row(self, r):
        r = self.store._check_row(r)
        return numpy.array([self.get_column(c)[r] for c in range(self.shape[1])],
                dtype='f8')

    def cached(self):
        """ The indices of the columns in the cache. """
        return sorted(self._cache)

    def clear(self):
        self._cache.clear()

    def __repr__(self):
        return 'MemoizedStore(%r, cached=%d)' % (self.store, len(self._cache))
