"""
    Arrays on anonymous shared memory.

    Memory allocated here is mapped before the worker processes of a
    :py:class:`binstore.pool.MapReduce` are forked, thus the workers and the
    master see the same pages. Workers of the process backend can write their
    results directly into such an array instead of sending them back through
    a pipe; a :py:class:`binstore.collection.MemoryCollection` created with
    :code:`shared=True` stores its arena here so that no column is copied
    into the workers.

    The arrays can not be shared with processes that were not forked from
    the allocating process (e.g. the workers of a
    :py:class:`binstore.pool.NetworkedPool`).

    Examples
    --------

    >>> output = binstore.memory.empty((R, C), dtype='f8')
    >>> with binstore.MapReduce() as pool:
    >>>     def work(c):
    >>>         output[:, c] = store.get_column(c)
    >>>     pool.map(work, range(C))

"""
__all__ = ['empty', 'empty_like', 'full', 'full_like', 'copy']

import mmap

import numpy

def empty_like(array, dtype=None):
    """ Create a shared memory array from the shape of array.
    """
    array = numpy.asarray(array)
    if dtype is None:
        dtype = array.dtype
    return anonymousmemmap(array.shape, dtype)

def empty(shape, dtype='f8'):
    """ Create an empty shared memory array.
    """
    return anonymousmemmap(shape, dtype)

def full_like(array, value, dtype=None):
    """ Create a shared memory array with the same shape and type as a given array, filled with `value`.
    """
    shared = empty_like(array, dtype)
    shared[...] = value
    return shared

def full(shape, value, dtype='f8'):
    """ Create a shared memory array of given shape and type, filled with `value`.
    """
    shared = empty(shape, dtype)
    shared[...] = value
    return shared

def copy(a):
    """ Copy an array to the shared memory.

        Notes
        -----
        copy is not always necessary because the private memory is always copy-on-write.

        Use :code:`a = copy(a)` to immediately dereference the old 'a' on private memory
    """
    a = numpy.asarray(a)
    shared = anonymousmemmap(a.shape, dtype=a.dtype)
    shared[...] = a
    return shared

_unpickle_ctypes_type = numpy.ctypeslib.as_ctypes_type(numpy.dtype('|u1'))

def __unpickle__(ai, dtype):
    dtype = numpy.dtype(dtype)
    tp = _unpickle_ctypes_type * 1

    # if there are strides, use strides, otherwise the stride is the itemsize of dtype
    if ai['strides']:
        tp *= ai['strides'][-1]
    else:
        tp *= dtype.itemsize

    for i in numpy.asarray(ai['shape'])[::-1]:
        tp *= int(i)

    # grab a flat char array at the sharemem address, with length at least contain ai required
    ra = tp.from_address(ai['data'][0])
    buffer = numpy.ctypeslib.as_array(ra).ravel()
    # view it as what it should look like
    shm = numpy.ndarray(buffer=buffer, dtype=dtype,
            strides=ai['strides'], shape=ai['shape']).view(type=anonymousmemmap)
    return shm

class anonymousmemmap(numpy.memmap):
    """ Arrays allocated on shared memory.

        The array is stored in an anonymous memory map that is shared between child-processes.

        Pickling an anonymousmemmap only records its address; the pickle can
        be loaded in the allocating process or in processes forked from it.

    """
    def __new__(subtype, shape, dtype=numpy.uint8, order='C'):

        descr = numpy.dtype(dtype)
        _dbytes = descr.itemsize

        shape = tuple(int(k) for k in numpy.atleast_1d(shape))
        size = 1
        for k in shape:
            size *= k

        nbytes = int(size * _dbytes)

        if nbytes > 0:
            mm = mmap.mmap(-1, nbytes)
        else:
            mm = numpy.empty(0, dtype=descr)
        self = numpy.ndarray.__new__(subtype, shape, dtype=descr, buffer=mm, order=order)
        self._mmap = mm
        return self

    def __array_wrap__(self, outarr, context=None, return_scalar=False):
        # after ufunc this won't be on shm!
        return numpy.ndarray.__array_wrap__(self.view(numpy.ndarray), outarr, context, return_scalar)

    def __reduce__(self):
        return __unpickle__, (self.__array_interface__, self.dtype)
