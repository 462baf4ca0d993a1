"""
Bin ragged keyed columns on access, out of core and in parallel.

A spectrum, a chromatogram, or any measurement that comes as (key, value)
pairs whose keys differ from one column to the next is hard to put into a
matrix without resampling everything first. binstore keeps the columns as
they are, in memory or in flat files, and presents them as a matrix whose
rows are the centers of a bin axis. A cell is the combination (sum, mean,
min, max, count, or your own) of the values whose keys lie within a
tolerance of the row's center, and it is computed only when it is read.

Four major components:

binstore.collection, binstore.binning, binstore.store and binstore.pool.

1 Collections of ragged columns.

   keys = binstore.save('/data/run1.mz', mz_columns)
   values = binstore.save('/data/run1.intensity', intensity_columns)

  The files are mapped on first access; a FileCollection pickles as its path.
  MemoryCollection(columns, shared=True) puts the columns on shared memory.

2 The binned store.

   store = binstore.BinnedStore(keys, values, step=0.01, tolerance=0.005)
   store.get_cell(r, c), store.get_column(c), store.get_row(r)

  Nothing is cached, unless asked for:

   memo = store.memoize()

3 Parallel evaluation.

   with binstore.get_pool('process') as pool:
       dense = store.todense(pool=pool)
       smoothed = store.map_columns(smooth, pool=pool)

  Pools are 'sequential', 'thread', 'process' (forked workers) and
  'network' (workers connected over TCP, possibly on other hosts).
  With map_columns a failing column is reported in its slot as a
  TaskFailure and does not stop the others.

4 Persistence of the configuration.

   store.save_config('run1.json')
   store = binstore.BinnedStore.load('run1.json')

Debugging:
  It is difficult to debug parallel code. There is a debugging mode
  where everything is run from the Master, and can be debugged.

    binstore.set_debug(True)

Environment variables:
  OMP_NUM_THREADS (or PBS_NUM_PPN) sets the default number of workers,
  BINSTORE_POOL the default pool of get_pool, and BINSTORE_AUTHKEY the
  authentication key of networked pools.
"""

from .exceptions import *
from .pool import (set_debug, get_debug, cpu_count,
        SlaveException, TaskFailure, LostExceptionType,
        MapReduce, MapReduceByThread, NetworkedPool, get_pool)
from .collection import (KeyedCollection, MemoryCollection, FileCollection,
        PairedCollection, save)
from .binning import BinAxis, Combiner, get_combiner
from .store import BinnedStore, MemoizedStore, load_config
from . import memory

__version__ = "0.1.0"
