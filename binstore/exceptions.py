"""
    Errors raised by the binned store and its collections.

    Parallel execution errors (:py:class:`binstore.pool.SlaveException` and
    friends) live in :py:mod:`binstore.pool`.
"""

__all__ = ['BinStoreError', 'ShapeMismatch', 'InvalidBinAxis',
        'IndexOutOfRange', 'NotFound']

class BinStoreError(Exception):
    """ Base class of all data errors raised by binstore. """
    pass

class ShapeMismatch(BinStoreError, ValueError):
    """ The key and value collections disagree on the number of columns,
        or on the length of a column.
    """
    pass

class InvalidBinAxis(BinStoreError, ValueError):
    """ The bin axis is empty, not one dimensional, not finite or not
        strictly increasing.
    """
    pass

class IndexOutOfRange(BinStoreError, IndexError):
    """ A row or column index outside of the store's shape. """
    pass

class NotFound(BinStoreError, LookupError):
    """ A collection does not have the requested column, or its
        backing file is missing or truncated.
    """
    pass
