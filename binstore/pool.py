"""
    Dispatch embarrassingly parallel per-column work.

    .. contents:: Topics
        :local:

    Programming Model
    -----------------
    :py:class:`MapReduce` provides the equivalent to multiprocessing.Pool, with the following
    differences:

    - MapReduce does not require the work function to be picklable.
    - MapReduce adds a reduction step that is guaranteed to run on the master process's
      scope.
    - MapReduce allows the use of critical sections and ordered execution in the work
      function.
    - MapReduce can report failures per item instead of aborting the batch
      (:code:`errors='collect'`).

    :py:class:`NetworkedPool` has the same :py:meth:`~MapReduce.map` interface but its
    workers connect over TCP, thus they may live on other hosts. The work function and
    the items must be picklable.

    Topologies are selected by name with :py:func:`get_pool`:

    ============  =============================================
    sequential    everything runs on the master
    thread        :py:class:`MapReduce` with :py:class:`ThreadBackend`
    process       :py:class:`MapReduce` with :py:class:`ProcessBackend` (fork)
    network       :py:class:`NetworkedPool`
    ============  =============================================

    Configuration
    -------------
    Environment variable :code:`OMP_NUM_THREADS` is used to determine the
    default number of slaves. On PBS/Torque systems, :code:`PBS_NUM_PPN`
    is used if `OMP_NUM_THREADS is not defined`.

    :code:`BINSTORE_POOL` names the default topology of :py:func:`get_pool`,
    :code:`BINSTORE_AUTHKEY` the authentication key of networked pools.

    .. attention ::

        The process backend depends on the `fork` system call. Where it is
        not available, process pools fall back to sequential execution.

    Examples
    --------

    Bin every column of a store, printing the progress

    >>> with binstore.MapReduce() as pool:
    >>>    def work(c):
    >>>        return c, store.get_column(c)
    >>>    def reduce(c, column):
    >>>        print('column', c, 'done')
    >>>        return column
    >>>    r = pool.map(work, range(store.shape[1]), reduce=reduce)

    pool.ordered can be used to require a block of code to be executed in order

    >>> with binstore.MapReduce() as pool:
    >>>    def work(i):
    >>>         with pool.ordered:
    >>>            print('Hello World from rank', i, '/', pool.np)
    >>>    pool.map(work, range(pool.np))

    API References
    --------------

"""
__all__ = ['set_debug', 'get_debug',
        'cpu_count',
        'SlaveException', 'TaskFailure', 'StopProcessGroup', 'LostExceptionType',
        'ThreadBackend', 'ProcessBackend',
        'MapReduce', 'MapReduceByThread',
        'NetworkedPool', 'worker',
        'get_pool',
        ]

import os
import multiprocessing
import threading
import queue
import traceback
import warnings
import logging
import gc
import heapq
import pickle
from multiprocessing.managers import BaseManager, AcquirerProxy

logger = logging.getLogger(__name__)

__pooldebug__ = False

if 'fork' in multiprocessing.get_all_start_methods():
    _context = multiprocessing.get_context('fork')
else:
    _context = None

def set_debug(flag):
    """ Set the debug mode.

        In debug mode (flag==True), every pool will
        run the work function on the master thread / process.
        This ensures all exceptions can be properly inspected by
        a debugger, e.g. pdb.

        Parameters
        ----------
        flag : boolean
            True for debug mode, False for production mode.


    """
    global __pooldebug__
    __pooldebug__ = flag

def get_debug():
    """ Get the debug mode.

        Returns
        -------
        The debug mode. True if currently in debugging mode.

    """
    return __pooldebug__

def cpu_count():
    """ Returns the default number of slave processes to be spawned.

        The default value is the number of physical cpu cores seen by python.
        :code:`OMP_NUM_THREADS` environment variable overrides it.

        On PBS/torque systems if OMP_NUM_THREADS is empty, we try to
        use the value of :code:`PBS_NUM_PPN` variable.

        Notes
        -----
        On some machines the physical number of cores does not equal
        the number of cpus shall be used. PSC Blacklight for example.

    """
    num = os.getenv("OMP_NUM_THREADS")
    if num is None:
        num = os.getenv("PBS_NUM_PPN")
    try:
        return int(num)
    except (TypeError, ValueError):
        return multiprocessing.cpu_count()

class LostExceptionType(Warning):
    """ Warning issued when a unpicklable exception occurs.
    """
    pass

class SlaveException(Exception):
    """ Represents an exception that has occured during a slave process

        Attributes
        ----------
        reason : Exception, or subclass of Exception.
            The underlining reason of the exception.
            If the original exception can be pickled, the type of the exception
            is preserved. Otherwise, a LostExceptionType warning is issued, and
            reason is of type Exception.

        traceback : str
            The string version of the traceback that can be used to inspect the
            error.

    """
    def __init__(self, reason, traceback):
        if not isinstance(reason, BaseException):
            warnings.warn("Type information of Unpicklable exception %s is lost" % reason, LostExceptionType)
            reason = Exception(reason)
        self.reason = reason
        self.traceback = traceback
        Exception.__init__(self, "%s\n%s" % (str(reason), str(traceback)))

    def __reduce__(self):
        return type(self), (self.reason, self.traceback)

class TaskFailure(SlaveException):
    """ The failure of a single item of a map.

        With :code:`errors='collect'` a TaskFailure takes the place of the
        result of the failed item; the other items are unaffected.
        It can be raised by the caller to propagate the error.

        Attributes
        ----------
        index : int
            position of the failed item in the mapped sequence.

    """
    def __init__(self, index, reason, traceback):
        self.index = index
        SlaveException.__init__(self, reason, traceback)

    def __reduce__(self):
        return type(self), (self.index, self.reason, self.traceback)

    def __repr__(self):
        return 'TaskFailure(%d, %r)' % (self.index, self.reason)

class StopProcessGroup(Exception):
    """ A special type of Exception.
        StopProcessGroup will terminate the slave process/thread
    """
    def __init__(self):
        Exception.__init__(self, "StopProcessGroup")

def _portable(e):
    # Some of the Exception types in extension types are probably
    # not picklable (thus can't be sent via a queue),
    # we only keep the string version of them.
    try:
        pickle.dumps(e)
    except Exception:
        return str(e)
    return e

class ProcessGroup(object):
    """ Monitoring a group of worker processes """
    def __init__(self, backend, main, np, args=()):
        self.Errors = backend.QueueFactory(1)
        self._tls = backend.StorageFactory()
        self.main = main
        self.args = args
        self.guard = threading.Thread(target=self._guardMain)
        self.errorguard = threading.Thread(target=self._errorGuard)
        # this has to be from backend because the slaves will check
        # this variable.

        self.guardDead = backend.EventFactory()
        # each dead child releases one sempahore
        # when all dead guard will proceed to set guarddead
        self.semaphore = threading.Semaphore(0)
        self.JoinedProcesses = multiprocessing.RawValue('l')
        self.P = [
            backend.SlaveFactory(target=self._slaveMain,
                args=(rank,)) \
                for rank in range(np)
            ]
        self.G = [
            threading.Thread(target=self._slaveGuard,
                args=(rank, self.P[rank])) \
                for rank in range(np)
            ]
        return

    def _slaveMain(self, rank):
        self._tls.rank = rank
        try:
            self.main(self, *self.args)
        except SlaveException as e:
            raise RuntimeError("slave exception shall never be caught by a slave")
        except StopProcessGroup as e:
            pass
        except BaseException as e:
            try:
                e = _portable(e)
                tb = traceback.format_exc()
                self.Errors.put((e, tb), timeout=0)
            except queue.Full:
                pass
        finally:
            # making all slaves exit one after another
            # on some Linuxes if many slaves (56+) access
            # mmap randomly the termination of the slaves
            # run into a deadlock.
            while self.JoinedProcesses.value < rank:
                continue

    def killall(self):
        for p in self.P:
            if not p.is_alive(): continue
            try:
                if isinstance(p, threading.Thread): p.join()
                else: os.kill(p.pid, 5)
            except Exception as e:
                logger.debug("failed to stop slave: %s", e)
                continue

    def _errorGuard(self):
        # this guard will kill every child if
        # an error is observed. We watch for this every 0.5 seconds
        # (errors do not happen very often)
        # if guardDead is set or killall is emitted, this will end immediately.
        while not self.guardDead.is_set():
            if not self.Errors.empty():
                self.killall()
                break
            self.guardDead.wait(timeout=0.5)

    def _slaveGuard(self, rank, process):
        process.join()
        if not isinstance(process, threading.Thread):
            if process.exitcode < 0 and process.exitcode != -5:
                e = Exception("slave process %d killed by signal %d" % (rank, -
                    process.exitcode))
                try:
                    self.Errors.put((e, ""), timeout=0)
                except queue.Full:
                    pass
        self.semaphore.release()

    def _guardMain(self):
        # this guard will wait till all children are dead.
        # we then set the guardDead event
        for x in self.G:
            self.semaphore.acquire()
            self.JoinedProcesses.value = self.JoinedProcesses.value + 1

        self.guardDead.set()

    def start(self):
        self.JoinedProcesses.value = 0
        self.guardDead.clear()

        # collect the garbages before forking so that the left-over
        # junk won't throw out assertion errors due to
        # wrong pid in multiprocess.heap
        gc.collect()

        logger.debug("starting %d slaves", len(self.P))
        # disable warnings for subprocesses, including the one about
        # forking a multi-threaded process.
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            for x in self.P:
                x.start()

        # p is alive from the moment start returns.
        # thus we can join them immediately after start returns.
        # guardMain will check if the slave has been
        # killed by the os, and simulate an error if so.
        for x in self.G:
            x.start()
        self.errorguard.start()
        self.guard.start()

    def get_exception(self):
        # give it a bit of slack in case the error is not yet posted.
        exp = self.Errors.get(timeout=1)
        return SlaveException(*exp)

    def get(self, Q):
        """ Protected get. Get an item from Q.
            Will block. but if the process group has errors,
            raise an StopProcessGroup exception.

            A slave process will terminate upon StopProcessGroup.
            The master process shall read the error from the process group.

        """
        while self.Errors.empty():
            try:
                return Q.get(timeout=1)
            except queue.Empty:
                # check if the process group is dead
                if not self.is_alive():
                    try:
                        return Q.get(timeout=0)
                    except queue.Empty:
                        raise StopProcessGroup
                else:
                    continue
        else:
            raise StopProcessGroup

    def put(self, Q, item):
        while self.Errors.empty():
            try:
                Q.put(item, timeout=1)
                return
            except queue.Full:
                if not self.is_alive():
                    raise StopProcessGroup
                else:
                    continue
        else:
            raise StopProcessGroup

    def is_alive(self):
        return not self.guardDead.is_set()

    def join(self):
        self.guardDead.wait()
        for x in self.G:
            x.join()

        self.errorguard.join()
        self.guard.join()
        if not self.Errors.empty():
            raise SlaveException(*self.Errors.get())

class Ordered(object):
    def __init__(self, backend):
        self.event = backend.EventFactory()
        self.counter = multiprocessing.RawValue('l')
        self.tls = backend.StorageFactory()

    def reset(self):
        self.counter.value = 0
        self.event.set()

    def move(self, iter):
        self.tls.iter = iter

    def __enter__(self):
        while self.counter.value != self.tls.iter:
            self.event.wait()
        self.event.clear()
        return self

    def __exit__(self, *args):
        # increase counter before releasing the value
        # so that the others waiting will see the new counter
        self.counter.value = self.counter.value + 1
        self.event.set()


class ThreadBackend:
      QueueFactory = staticmethod(queue.Queue)
      EventFactory = staticmethod(threading.Event)
      LockFactory = staticmethod(threading.Lock)
      StorageFactory = staticmethod(threading.local)
      @staticmethod
      def SlaveFactory(*args, **kwargs):
        slave = threading.Thread(*args, **kwargs)
        slave.daemon = True
        return slave

class ProcessBackend:
      @staticmethod
      def QueueFactory(maxsize=0):
          return _context.Queue(maxsize)
      @staticmethod
      def EventFactory():
          return _context.Event()
      @staticmethod
      def LockFactory():
          return _context.Lock()

      @staticmethod
      def SlaveFactory(*args, **kwargs):
        slave = _context.Process(*args, **kwargs)
        slave.daemon = True
        return slave
      @staticmethod
      def StorageFactory():
          return lambda:None

def MapReduceByThread(np=None):
    """ Creates a MapReduce object but with the Thread backend.

        The process backend is usually preferred.
    """
    return MapReduce(backend=ThreadBackend, np=np)

def _serial_map(pool, func, sequence, reduce, star, errors):
    # the shared sequential path of all pools, also used in debug mode.
    def realreduce(r):
        if isinstance(r, TaskFailure):
            return r
        if reduce:
            if isinstance(r, tuple):
                return reduce(*r)
            else:
                return reduce(r)
        return r

    pool.local = lambda : None
    pool.local.rank = 0

    rt = []
    for i, work in enumerate(sequence):
        if errors == 'collect':
            try:
                r = func(*work) if star else func(work)
            except Exception as e:
                r = TaskFailure(i, e, traceback.format_exc())
        else:
            r = func(*work) if star else func(work)
        rt.append(realreduce(r))

    pool.local = None
    return rt

def _check_errors(errors):
    if errors not in ('raise', 'collect'):
        raise ValueError("errors must be 'raise' or 'collect', got %r" % (errors,))

class MapReduce(object):
    """
        A pool of slave processes for a Map-Reduce operation

        Parameters
        ----------
        backend : ProcessBackend or ThreadBackend
            ProcessBackend is preferred. ThreadBackend can be used in cases where
            processes creation is not allowed.

        np   : int or None
            Number of processes to use. Default (None) is from OMP_NUM_THREADS or
            the number of available cores on the computer. If np is 0, all operations
            are performed on the master process -- no child processes are created.

        Attributes
        ----------
        np   : int
            Number of processes to use. (`omp_get_num_threads()`)

        local : object
            A namespace object that contains variables local to the worker
            thread / process. local is only accessible in the worker processes.

        local.rank : int
            The rank of the current worker. (`omp_get_thread_num()`)

        Notes
        -----
        Always wrap the call to :py:meth:`map` in a context manager ('with') block.

        Examples
        --------

        >>> with binstore.MapReduce() as pool:
        >>>     def work(i):
        >>>         return i + pool.local.rank
        >>>     pool.map(work, range(10))
    """
    def __init__(self, backend=ProcessBackend, np=None):
        self.backend = backend
        if np is None:
            self.np = cpu_count()
        else:
            self.np = np
        if backend is ProcessBackend and _context is None:
            if self.np != 0:
                logger.warning("fork is not available on this platform; "
                        "falling back to sequential execution")
            self.backend = ThreadBackend
            self.np = 0
        self.critical = None
        self.ordered = None
        self.local = None

    def _main(self, pg, Q, R, sequence, realfunc):
        # get and put will raise SlaveException
        # and terminate the process.
        # the exception is muted in ProcessGroup,
        # as it will only be dispatched from master.
        self.local = pg._tls
        while True:
            capsule = pg.get(Q)
            if capsule is None:
                return
            if len(capsule) == 1:
                i, = capsule
                work = sequence[i]
            else:
                i, work = capsule
            self.ordered.move(i)
            r = realfunc(i, work)
            pg.put(R, (i, r))

    def __enter__(self):
        self.critical = self.backend.LockFactory()
        self.ordered = Ordered(self.backend)
        self.local = None # will be set during _main
        return self

    def __exit__(self, *args):
        self.ordered = None
        self.local = None

    def __repr__(self):
        return '%s(backend=%s, np=%d)' % (type(self).__name__,
                self.backend.__name__, self.np)

    def map(self, func, sequence, reduce=None, star=False, minlength=0, errors='raise'):
        """ Map-reduce with multile processes.

            Apply func to each item on the sequence, in parallel.
            As the results are collected, reduce is called on the result.
            The reduced result is returned as a list.

            Parameters
            ----------
            func : callable
                The function to call. It must accept the same number of
                arguments as the length of an item in the sequence.

                .. warning::

                    func is not supposed to use exceptions for flow control.
                    In non-debug mode all exceptions will be wrapped into
                    a :py:class:`SlaveException`.

            sequence : list or array_like
                The sequence of arguments to be applied to func.

            reduce : callable, optional
                Apply an reduction operation on the
                return values of func. If func returns a tuple, they
                are treated as positional arguments of reduce.

            star : boolean
                if True, the items in sequence are treated as positional
                arguments of func.

            minlength: integer
                Minimal length of `sequence` to start parallel processing.
                if len(sequence) < minlength, fall back to sequential
                processing. This can be used to avoid the overhead of starting
                the worker processes when there is little work.

            errors : 'raise' or 'collect'
                With 'raise', the first failure aborts the map. With 'collect',
                the failure of an item is returned as a :py:class:`TaskFailure`
                in place of its result (reduce is not called on it), and
                the other items are processed normally.

            Returns
            -------
            results : list
                The list of reduced results from the map operation, in
                the order of the arguments of sequence.

            Raises
            ------
            SlaveException
                If any of the slave process encounters
                an exception. Inspect :py:attr:`SlaveException.reason` for the underlying exception.
                In the sequential mode the exception is raised unwrapped.

        """
        _check_errors(errors)
        if not hasattr(sequence, '__len__'):
            sequence = list(sequence)

        if len(sequence) <= 0 or len(sequence) < minlength \
                or self.np == 0 or get_debug():
            # Do this in serial
            return _serial_map(self, func, sequence, reduce, star, errors)

        if self.ordered is None:
            raise RuntimeError("MapReduce.map shall be called inside a 'with' block")

        def realreduce(r):
            if isinstance(r, TaskFailure):
                return r
            if reduce:
                if isinstance(r, tuple):
                    return reduce(*r)
                else:
                    return reduce(r)
            return r

        def realfunc(i, work):
            if errors == 'raise':
                if star: return func(*work)
                else: return func(work)
            try:
                if star: return func(*work)
                else: return func(work)
            except Exception as e:
                return TaskFailure(i, _portable(e), traceback.format_exc())

        # never use more than len(sequence) processes
        np = min([self.np, len(sequence)])

        Q = self.backend.QueueFactory(64)
        R = self.backend.QueueFactory(64)
        self.ordered.reset()

        pg = ProcessGroup(main=self._main, np=np,
                backend=self.backend,
                args=(Q, R, sequence, realfunc))

        pg.start()

        L = []
        N = []
        def feeder(pg, Q, N):
            #   will fail silently if any error occurs.
            j = 0
            try:
                for i, work in enumerate(sequence):
                    if not hasattr(sequence, '__getitem__'):
                        pg.put(Q, (i, work))
                    else:
                        pg.put(Q, (i, ))
                    j = j + 1
                N.append(j)

                for i in range(np):
                    pg.put(Q, None)
            except StopProcessGroup:
                return
        feeder = threading.Thread(None, feeder, args=(pg, Q, N))
        feeder.start()

        # we run fetcher on main thread to catch exceptions
        # raised by reduce
        count = 0
        try:
            while True:
                try:
                    capsule = pg.get(R)
                except queue.Empty:
                    continue
                except StopProcessGroup:
                    raise pg.get_exception()
                capsule = capsule[0], realreduce(capsule[1])
                heapq.heappush(L, capsule)
                count = count + 1
                if len(N) > 0 and count == N[0]:
                    # if finished feeding see if all
                    # results have been obtained
                    break
            rt = []
            while len(L) > 0:
                rt.append(heapq.heappop(L)[1])
            pg.join()
            feeder.join()
            if N[0] != len(rt):
                raise RuntimeError("fed %d items but collected %d results" % (N[0], len(rt)))
            return rt
        except BaseException as e:
            pg.killall()
            pg.join()
            feeder.join()
            raise

class _Batches(object):
    """ The result queues of the maps of a :py:class:`NetworkedPool`.

        Lives in the server process of the QueueManager. A batch is open
        from the start of a map until its end; results and tasks of a
        closed batch are discarded.
    """
    def __init__(self):
        self._queues = {}
        self._lock = threading.Lock()

    def open(self, name):
        with self._lock:
            self._queues[name] = queue.Queue()

    def close(self, name):
        with self._lock:
            self._queues.pop(name, None)

    def is_open(self, name):
        with self._lock:
            return name in self._queues

    def put(self, name, item):
        with self._lock:
            q = self._queues.get(name)
        if q is None:
            return False
        q.put(item)
        return True

    def get(self, name, timeout):
        with self._lock:
            q = self._queues[name]
        return q.get(timeout=timeout)

    def count(self):
        with self._lock:
            return len(self._queues)

_TASKS = queue.Queue()
_BATCHES = _Batches()
_CRITICAL = threading.Lock()

def _get_tasks():
    return _TASKS

def _get_batches():
    return _BATCHES

def _get_critical():
    return _CRITICAL

class QueueManager(BaseManager):
    """ Serves the task queue, the result queues and the critical lock
        of a :py:class:`NetworkedPool`.
    """
    pass

QueueManager.register('get_tasks', callable=_get_tasks)
QueueManager.register('get_batches', callable=_get_batches)
QueueManager.register('get_critical', callable=_get_critical,
        proxytype=AcquirerProxy)

def _authkey(authkey):
    if authkey is None:
        authkey = os.getenv('BINSTORE_AUTHKEY')
    if authkey is None:
        return bytes(multiprocessing.current_process().authkey)
    if isinstance(authkey, str):
        authkey = authkey.encode('utf-8')
    return authkey

def worker(address, authkey=None):
    """ Serve the tasks of a :py:class:`NetworkedPool`.

        Returns when the pool stops, or when the connection to the pool is lost.
        This is the main function of the local workers of a pool, and can be
        called on other hosts to join a pool listening on a public address.

        Parameters
        ----------
        address : (host, port)
            the address of the pool, :py:attr:`NetworkedPool.address`.
        authkey : bytes, str or None
            the authentication key of the pool. Default is
            :code:`BINSTORE_AUTHKEY` or the authkey of the current process.

    """
    authkey = _authkey(authkey)
    # proxies sent within the tasks are rebuilt with this key
    multiprocessing.current_process().authkey = authkey

    manager = QueueManager(address=tuple(address), authkey=authkey)
    manager.connect()
    tasks = manager.get_tasks()
    batches = manager.get_batches()
    logger.debug("worker %d connected to %s", os.getpid(), address)

    while True:
        try:
            capsule = tasks.get()
        except (EOFError, OSError):
            logger.debug("worker %d lost the pool at %s", os.getpid(), address)
            return
        if capsule is None:
            return
        name, i, payload = capsule
        try:
            if not batches.is_open(name):
                # left over from an aborted map
                continue
        except (EOFError, OSError):
            return
        try:
            func, work, star = pickle.loads(payload)
            if star: r = func(*work)
            else: r = func(work)
            r = pickle.dumps(r)
            failed = False
        except Exception as e:
            r = pickle.dumps(TaskFailure(i, _portable(e), traceback.format_exc()))
            failed = True
        try:
            batches.put(name, (i, failed, r))
        except (EOFError, OSError):
            return

class NetworkedPool(object):
    """
        A pool of workers that receive their tasks over the network.

        The pool starts a :py:class:`QueueManager` server listening on
        `address`, and `np` local worker processes connected to it. Workers on
        other hosts join with :py:func:`worker`.

        Parameters
        ----------
        address : (host, port), optional
            The address to listen on. Default is an arbitrary port on the
            loop back interface; use a public host name to let remote workers
            join.

        authkey : bytes, str or None
            The authentication key, shared by all workers.
            Default is :code:`BINSTORE_AUTHKEY` or the authkey of the current process.

        np : int or None
            Number of local workers. Default (None) is from :py:func:`cpu_count`.
            If np is 0, only remote workers process the tasks.

        Attributes
        ----------
        address : (host, port)
            The address of the running server.

        critical : lock
            A lock shared by all workers. It can be passed to the work function
            as part of the items.

        Notes
        -----
        func and the items of sequence are pickled for each task, and
        the results are pickled back.
        :code:`ordered` and :code:`local` are not available.

        Examples
        --------

        >>> with binstore.NetworkedPool(np=4) as pool:
        >>>     r = pool.map(binstore.store.bin_column,
        >>>              [(spec, k, v) for k, v in columns], star=True)

    """
    def __init__(self, address=None, authkey=None, np=None):
        if address is None:
            address = ('127.0.0.1', 0)
        self._address = tuple(address)
        self.authkey = _authkey(authkey)
        if np is None:
            self.np = cpu_count()
        else:
            self.np = np
        self.critical = None
        self.local = None
        self._manager = None
        self._tasks = None
        self._batches = None
        self._workers = []
        self._batch = 0

    @property
    def address(self):
        if self._manager is None:
            return self._address
        return self._manager.address

    def __enter__(self):
        self._manager = QueueManager(address=self._address, authkey=self.authkey,
                ctx=_context)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            self._manager.start()
        self._tasks = self._manager.get_tasks()
        self._batches = self._manager.get_batches()
        self.critical = self._manager.get_critical()
        logger.debug("queue manager listening on %s", self._manager.address)

        ctx = _context or multiprocessing.get_context()
        self._workers = [
            ctx.Process(target=worker, args=(self._manager.address, self.authkey))
            for rank in range(self.np)
            ]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            for p in self._workers:
                p.daemon = True
                p.start()
        return self

    def __exit__(self, type, value, tb):
        if type is None:
            for p in self._workers:
                self._tasks.put(None)
            # a remote worker may have taken the stop signal of a local one;
            # those notice the shutdown of the server instead.
            for p in self._workers:
                p.join(timeout=1)
        else:
            for p in self._workers:
                p.terminate()
        self.critical = None
        self._tasks = None
        self._batches = None
        self._manager.shutdown()
        self._manager = None
        for p in self._workers:
            p.join()
        self._workers = []

    def pending(self):
        """ The number of maps whose results are held by the server. """
        if self._batches is None:
            return 0
        return self._batches.count()

    def __repr__(self):
        return 'NetworkedPool(address=%r, np=%d)' % (self.address, self.np)

    def _check_workers(self):
        for rank, p in enumerate(self._workers):
            if p.exitcode is not None and p.exitcode < 0:
                raise SlaveException(Exception("worker %d killed by signal %d"
                        % (rank, -p.exitcode)), "")
        if len(self._workers) > 0 and all(not p.is_alive() for p in self._workers):
            raise SlaveException(Exception("all workers have exited"), "")

    def map(self, func, sequence, reduce=None, star=False, minlength=0, errors='raise'):
        """ Map-reduce with networked workers.

            The parameters and the return value are the same as :py:meth:`MapReduce.map`.

            Raises
            ------
            SlaveException
                If a local worker is killed, or if an item fails
                with :code:`errors='raise'` (as a :py:class:`TaskFailure`).

        """
        _check_errors(errors)
        if not hasattr(sequence, '__len__'):
            sequence = list(sequence)

        if len(sequence) <= 0 or len(sequence) < minlength or get_debug():
            return _serial_map(self, func, sequence, reduce, star, errors)

        if self._manager is None:
            raise RuntimeError("NetworkedPool.map shall be called inside a 'with' block")

        def realreduce(r):
            if reduce:
                if isinstance(r, tuple):
                    return reduce(*r)
                else:
                    return reduce(r)
            return r

        # a result queue per map; late results of an aborted map
        # never reach the next one.
        self._batch = self._batch + 1
        name = 'results-%d-%d' % (os.getpid(), self._batch)
        self._batches.open(name)

        L = []
        try:
            for i, work in enumerate(sequence):
                payload = pickle.dumps((func, work, star))
                self._tasks.put((name, i, payload))

            while len(L) < len(sequence):
                try:
                    i, failed, r = self._batches.get(name, 1)
                except queue.Empty:
                    self._check_workers()
                    continue
                r = pickle.loads(r)
                if failed:
                    if errors == 'raise':
                        raise r
                else:
                    r = realreduce(r)
                heapq.heappush(L, (i, r))
        finally:
            # tasks of the map still queued are skipped by the workers
            self._batches.close(name)

        return [heapq.heappop(L)[1] for i in range(len(L))]

def get_pool(kind=None, np=None, **options):
    """ Create a pool by the name of its topology.

        Parameters
        ----------
        kind : str or None
            'sequential', 'thread', 'process' or 'network'. Default is from
            the :code:`BINSTORE_POOL` environment variable, or 'process'.
        np : int or None
            Number of workers. Ignored by 'sequential'.
        options :
            passed to :py:class:`NetworkedPool`.

        Returns
        -------
        pool : MapReduce or NetworkedPool
            To be used in a 'with' block.

    """
    if kind is None:
        kind = os.getenv('BINSTORE_POOL', 'process')
    kind = kind.lower()
    if kind == 'sequential':
        return MapReduce(backend=ThreadBackend, np=0)
    if kind == 'thread':
        return MapReduceByThread(np=np)
    if kind == 'process':
        return MapReduce(np=np)
    if kind == 'network':
        return NetworkedPool(np=np, **options)
    raise ValueError("unknown pool kind %r, expected one of "
            "'sequential', 'thread', 'process', 'network'" % (kind,))
