"""
    Keyed collections: ragged columns with random access by column index.

    A collection is an ordered sequence of one dimensional float64 columns
    of arbitrary, independent lengths. All implementations here store the
    columns back to back in a single flat array (the arena), plus an index of
    :code:`C + 1` offsets; column i is :code:`arena[offsets[i]:offsets[i + 1]]`.
    Reading a column never touches the other columns.

    - :py:class:`MemoryCollection` keeps the arena in memory, optionally on
      shared memory (:py:mod:`binstore.memory`) for forked workers.
    - :py:class:`FileCollection` maps the arena from a pair of flat files
      written by :py:func:`save`. The files are opened on first access.
    - :py:class:`PairedCollection` zips a key collection with a value
      collection of the same shape.

    Examples
    --------

    >>> keys = binstore.collection.save('/data/run1.mz', mz_columns)
    >>> values = binstore.collection.save('/data/run1.intensity', intensity_columns)
    >>> len(keys), keys.column_length(0)
    >>> keys.get_column(0)

"""
__all__ = ['KeyedCollection', 'MemoryCollection', 'FileCollection',
        'PairedCollection', 'save', 'open_handle', 'as_collection']

import os
import operator
import threading
import logging

import numpy

from . import memory
from .exceptions import NotFound, ShapeMismatch

logger = logging.getLogger(__name__)

class KeyedCollection(object):
    """ The interface of a collection of columns.

        Subclasses implement :py:meth:`length` and :py:meth:`get_column`;
        the rest has a default implementation.
    """
    def length(self):
        """ Number of columns. """
        raise NotImplementedError

    def get_column(self, i):
        """ Returns column i as a one dimensional array.

            Raises
            ------
            NotFound
                if i is not in [0, length()).
        """
        raise NotImplementedError

    def column_length(self, i):
        """ Number of items in column i. """
        return len(self.get_column(i))

    def lengths(self):
        """ Number of items of every column, as an integer array. """
        return numpy.array([self.column_length(i) for i in range(self.length())],
                dtype='i8')

    def handle(self):
        """ A json friendly description that reopens the collection in
            another process, or None if there is none.
        """
        return None

    def __len__(self):
        return self.length()

    def __getitem__(self, i):
        return self.get_column(i)

    def __iter__(self):
        for i in range(self.length()):
            yield self.get_column(i)

    def _check_index(self, i):
        i = operator.index(i)
        n = self.length()
        if i < 0 or i >= n:
            raise NotFound("column %d is not in [0, %d)" % (i, n))
        return i

def _check_arena(arena, offsets):
    if offsets.ndim != 1 or len(offsets) == 0 or offsets[0] != 0:
        raise ValueError("offsets shall be one dimensional and start from 0")
    if (numpy.diff(offsets) < 0).any():
        raise ValueError("offsets shall be non-decreasing")
    if offsets[-1] != len(arena):
        raise ValueError("offsets end at %d but the arena has %d items"
                % (offsets[-1], len(arena)))

class _ArenaCollection(KeyedCollection):
    # subclasses provide _open() -> (arena, offsets)

    def length(self):
        arena, offsets = self._open()
        return len(offsets) - 1

    def get_column(self, i):
        i = self._check_index(i)
        arena, offsets = self._open()
        return arena[offsets[i]:offsets[i + 1]]

    def column_length(self, i):
        i = self._check_index(i)
        arena, offsets = self._open()
        return int(offsets[i + 1] - offsets[i])

    def lengths(self):
        arena, offsets = self._open()
        return numpy.diff(offsets)

    @property
    def size(self):
        """ Total number of items in all columns. """
        arena, offsets = self._open()
        return len(arena)

class MemoryCollection(_ArenaCollection):
    """ A collection in memory.

        Parameters
        ----------
        columns : iterable of array_like
            The columns; each is converted to a one dimensional float64 array.

        shared : boolean
            If True, the arena is allocated on shared memory. Workers forked by
            a :py:class:`binstore.pool.MapReduce` then read the columns without
            copying them.

        Notes
        -----
        The columns are copied into the arena and are read-only thereafter.

    """
    def __init__(self, columns, shared=False):
        columns = [numpy.asarray(column, dtype='f8') for column in columns]
        for i, column in enumerate(columns):
            if column.ndim != 1:
                raise ValueError("column %d is not one dimensional" % i)

        offsets = numpy.zeros(len(columns) + 1, dtype='i8')
        offsets[1:] = numpy.cumsum([len(column) for column in columns], dtype='i8')

        if len(columns) > 0:
            arena = numpy.concatenate(columns)
        else:
            arena = numpy.empty(0, dtype='f8')
        self._init(arena, offsets, shared)

    def _init(self, arena, offsets, shared):
        if shared:
            arena = memory.copy(arena)
            offsets = memory.copy(offsets)
        arena.flags.writeable = False
        offsets.flags.writeable = False
        self.shared = shared
        self._arena = arena
        self._offsets = offsets

    @classmethod
    def from_arena(kls, arena, offsets, shared=False):
        """ Create a collection from an existing arena and its offsets.

            The arena is not copied unless shared is True.
        """
        arena = numpy.asarray(arena, dtype='f8')
        offsets = numpy.asarray(offsets, dtype='i8')
        if arena.ndim != 1:
            raise ValueError("the arena shall be one dimensional")
        _check_arena(arena, offsets)
        self = kls.__new__(kls)
        self._init(arena, offsets, shared)
        return self

    def _open(self):
        return self._arena, self._offsets

    def __repr__(self):
        return 'MemoryCollection(columns=%d, size=%d, shared=%s)' % (
                len(self._offsets) - 1, len(self._arena), self.shared)

class FileCollection(_ArenaCollection):
    """ A read-only collection mapped from flat files.

        The arena is :code:`path + '.dat'`, raw little-endian float64;
        the index is :code:`path + '.idx'`, raw little-endian int64 offsets.
        Use :py:func:`save` to write them.

        The files are opened on first access and stay mapped until
        :py:meth:`close`. Pickling a FileCollection only records the path;
        the receiving process maps the files on its own.

        Parameters
        ----------
        path : str or path-like
            the common prefix of the two files.

        Raises
        ------
        NotFound
            On first access, if a file is missing or truncated.

    """
    def __init__(self, path):
        self.path = os.fspath(path)
        self._lock = threading.Lock()
        self._arena = None
        self._offsets = None

    def _open(self):
        if self._arena is None:
            with self._lock:
                if self._arena is None:
                    self._offsets, self._arena = self._load()
        return self._arena, self._offsets

    def _load(self):
        idxpath = self.path + '.idx'
        datpath = self.path + '.dat'
        try:
            offsets = numpy.fromfile(idxpath, dtype='<i8')
            nbytes = os.path.getsize(datpath)
        except OSError as e:
            raise NotFound("collection %s can not be opened: %s" % (self.path, e)) from e

        itemsize = numpy.dtype('<f8').itemsize
        if len(offsets) == 0 or offsets[0] != 0 or (numpy.diff(offsets) < 0).any():
            raise NotFound("index %s is truncated or corrupted" % idxpath)
        if nbytes % itemsize != 0 or nbytes // itemsize < offsets[-1]:
            raise NotFound("data file %s is truncated: %d bytes for %d items"
                    % (datpath, nbytes, offsets[-1]))

        size = int(offsets[-1])
        if size > 0:
            arena = numpy.memmap(datpath, dtype='<f8', mode='r', shape=(size,))
        else:
            # empty files can not be mapped
            arena = numpy.empty(0, dtype='<f8')
        offsets.flags.writeable = False
        logger.debug("opened %s: %d columns, %d items", self.path,
                len(offsets) - 1, size)
        return offsets, arena

    def close(self):
        """ Unmap the files. The next access maps them again. """
        with self._lock:
            self._arena = None
            self._offsets = None

    def handle(self):
        return {'type': 'file', 'path': self.path}

    def __reduce__(self):
        return FileCollection, (self.path,)

    def __repr__(self):
        return 'FileCollection(%r)' % self.path

def save(path, columns):
    """ Write columns to the flat files of a :py:class:`FileCollection`.

        The columns are written one after another, so an iterator of columns
        never needs to fit in memory.

        Parameters
        ----------
        path : str or path-like
            the common prefix of the files; :code:`.dat` and :code:`.idx` are
            appended.
        columns : iterable of array_like
            one dimensional columns, converted to float64.

        Returns
        -------
        collection : FileCollection
            the collection over the new files.

    """
    path = os.fspath(path)
    offsets = [0]
    with open(path + '.dat', 'wb') as f:
        for i, column in enumerate(columns):
            column = numpy.asarray(column, dtype='<f8')
            if column.ndim != 1:
                raise ValueError("column %d is not one dimensional" % i)
            column.tofile(f)
            offsets.append(offsets[-1] + len(column))
    # the index is written last: an interrupted save leaves no index behind.
    numpy.asarray(offsets, dtype='<i8').tofile(path + '.idx')
    return FileCollection(path)

def open_handle(handle):
    """ Reopen a collection from its :py:meth:`KeyedCollection.handle`. """
    if handle is None:
        raise ValueError("the collection has no handle and can not be reopened")
    if handle.get('type') == 'file':
        return FileCollection(handle['path'])
    raise ValueError("unknown collection handle %r" % (handle,))

def as_collection(columns, shared=False):
    """ Returns columns if it is a :py:class:`KeyedCollection`, otherwise
        wraps it into a :py:class:`MemoryCollection`.
    """
    if isinstance(columns, KeyedCollection):
        return columns
    return MemoryCollection(columns, shared=shared)

class PairedCollection(object):
    """ A key collection and a value collection of the same shape.

        Parameters
        ----------
        keys, values : KeyedCollection
            the i-th columns of both describe the same logical column.

        validate : boolean
            check the length of every column pair now; otherwise the check
            happens on :py:meth:`get_pair_columns`.

        Raises
        ------
        ShapeMismatch
            if the number of columns, or the length of a column differ.

    """
    def __init__(self, keys, values, validate=True):
        self.keys = keys
        self.values = values
        if keys.length() != values.length():
            raise ShapeMismatch("%d key columns but %d value columns"
                    % (keys.length(), values.length()))
        if validate:
            lk = numpy.asarray(keys.lengths())
            lv = numpy.asarray(values.lengths())
            bad = numpy.nonzero(lk != lv)[0]
            if len(bad) > 0:
                i = bad[0]
                raise ShapeMismatch("column %d has %d keys but %d values"
                        % (i, lk[i], lv[i]))

    def length(self):
        return self.keys.length()

    def __len__(self):
        return self.length()

    def get_pair_columns(self, i):
        """ Returns (keys, values) of column i. """
        k = self.keys.get_column(i)
        v = self.values.get_column(i)
        if len(k) != len(v):
            raise ShapeMismatch("column %d has %d keys but %d values"
                    % (i, len(k), len(v)))
        return k, v
