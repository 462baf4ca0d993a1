"""
    Tolerance windowed binning of (key, value) columns onto a bin axis.

    The value of bin r of a column is the combination of all values whose key
    is within the tolerance of the bin center:

        combiner({v[p] : |k[p] - axis[r]| <= halfwidth(axis[r])})

    where halfwidth is the tolerance ('absolute') or the tolerance times
    the magnitude of the center ('relative', e.g. ppm of a mass).
    The comparison is inclusive, thus a key exactly halfway between two
    centers that are two tolerances apart contributes to both bins; binned
    totals do not add up to the column totals in that case.

    Bins that receive no value hold the fill value ('count' always reports 0).

    Two evaluation paths are provided and they agree:

    - :py:func:`bin_column` bins a whole column in a single vectorized pass.
      Each key is mapped to the few candidate bins that may contain it
      (by rounding on an evenly spaced axis, by binary search otherwise), and
      every candidate is confirmed against the true distance to its center.
    - :py:func:`bin_cell` evaluates one bin by scanning the column.

"""
__all__ = ['BinAxis', 'Combiner', 'COMBINERS', 'get_combiner',
        'BinSpec', 'make_spec', 'bin_column', 'bin_cell']

from collections import namedtuple

import numpy

from .exceptions import InvalidBinAxis

class BinAxis(object):
    """ A strictly increasing sequence of bin centers.

        Parameters
        ----------
        centers : array_like
            one dimensional, finite, strictly increasing.

        Attributes
        ----------
        centers : ndarray
            read-only float64 array of the centers.

        step : float or None
            the spacing if the axis is evenly spaced, otherwise None.

        derived : tuple or None
            (start, stop, step) if the axis was created by :py:meth:`from_range`.

        Raises
        ------
        InvalidBinAxis

    """
    def __init__(self, centers):
        try:
            centers = numpy.array(centers, dtype='f8')
        except (TypeError, ValueError) as e:
            raise InvalidBinAxis("bin centers are not real numbers: %s" % e) from e
        if centers.ndim != 1:
            raise InvalidBinAxis("bin axis shall be one dimensional, got shape %s"
                    % (centers.shape,))
        if len(centers) == 0:
            raise InvalidBinAxis("bin axis is empty")
        if not numpy.isfinite(centers).all():
            raise InvalidBinAxis("bin axis has non-finite centers")
        diffs = numpy.diff(centers)
        if (diffs <= 0).any():
            i = numpy.nonzero(diffs <= 0)[0][0]
            raise InvalidBinAxis("bin axis is not strictly increasing at %d: %g, %g"
                    % (i, centers[i], centers[i + 1]))
        centers.flags.writeable = False

        self.centers = centers
        self.derived = None
        if len(diffs) > 0 and numpy.allclose(diffs, diffs[0], rtol=1e-9, atol=0):
            self.step = (centers[-1] - centers[0]) / (len(centers) - 1)
        else:
            self.step = None

    @classmethod
    def from_range(kls, start, stop, step):
        """ An evenly spaced axis from start to stop (inclusive if on the grid).

            The centers are :code:`start + step * arange(n)` with
            :code:`n = floor((stop - start) / step) + 1`.

        """
        start, stop, step = float(start), float(stop), float(step)
        if not numpy.isfinite([start, stop, step]).all():
            raise InvalidBinAxis("start, stop and step shall be finite")
        if step <= 0:
            raise InvalidBinAxis("step shall be positive, got %g" % step)
        if stop < start:
            raise InvalidBinAxis("stop %g is before start %g" % (stop, start))

        q = (stop - start) / step
        # stop is on the grid up to rounding errors of the division
        if abs(q - round(q)) <= 1e-9 * max(1.0, q):
            n = int(round(q)) + 1
        else:
            n = int(numpy.floor(q)) + 1

        self = kls(start + step * numpy.arange(n))
        if n > 1:
            self.step = step
        self.derived = (start, stop, step)
        return self

    @property
    def start(self):
        return self.centers[0]

    def __len__(self):
        return len(self.centers)

    def __getitem__(self, r):
        return self.centers[r]

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self.centers
        return self.centers.astype(dtype)

    def __eq__(self, other):
        if not isinstance(other, BinAxis):
            return NotImplemented
        return numpy.array_equal(self.centers, other.centers)

    def __ne__(self, other):
        r = self.__eq__(other)
        if r is NotImplemented:
            return r
        return not r

    __hash__ = None

    def __repr__(self):
        if self.derived is not None:
            return 'BinAxis.from_range(%r, %r, %r)' % self.derived
        return 'BinAxis(%d centers from %g to %g)' % (
                len(self.centers), self.centers[0], self.centers[-1])

class Combiner(object):
    """ Reduction of the values that fall into one bin.

        Parameters
        ----------
        reduce : callable
            reduce(values) -> scalar, values is a non-empty float64 array.
            It shall be associative and commutative: the order of the values
            is the column order but is not guaranteed to stay so.

        name : str, optional

        Notes
        -----
        A user supplied reduce is applied bin by bin. The built-in combiners
        override :py:meth:`binned` with vectorized versions.

    """
    def __init__(self, reduce, name=None):
        self.reduce = reduce
        if name is None:
            name = getattr(reduce, '__name__', None)
        self.name = name

    def empty(self, fill):
        """ The value of a bin without values. """
        return fill

    def binned(self, rows, values, nrows, fill):
        """ Combine values[i] into bin rows[i]; returns nrows bins. """
        out = numpy.full(nrows, self.empty(fill), dtype='f8')
        if len(rows) == 0:
            return out
        order = numpy.argsort(rows, kind='stable')
        rows = rows[order]
        values = values[order]
        bounds = numpy.flatnonzero(numpy.diff(rows)) + 1
        starts = numpy.concatenate([[0], bounds])
        ends = numpy.concatenate([bounds, [len(rows)]])
        for s, e in zip(starts, ends):
            out[rows[s]] = self.reduce(values[s:e])
        return out

    def __repr__(self):
        return 'Combiner(%r)' % (self.name,)

class _Builtin(Combiner):
    def __init__(self, name, reduce):
        Combiner.__init__(self, reduce, name)

    def __reduce__(self):
        return get_combiner, (self.name,)

    def __repr__(self):
        return 'get_combiner(%r)' % self.name

class _Sum(_Builtin):
    def binned(self, rows, values, nrows, fill):
        # bincount gives integers when rows is empty
        out = numpy.bincount(rows, weights=values, minlength=nrows).astype('f8')
        out[numpy.bincount(rows, minlength=nrows) == 0] = fill
        return out

class _Mean(_Builtin):
    def binned(self, rows, values, nrows, fill):
        count = numpy.bincount(rows, minlength=nrows)
        out = numpy.bincount(rows, weights=values, minlength=nrows).astype('f8')
        hit = count > 0
        out[hit] /= count[hit]
        out[~hit] = fill
        return out

class _Extreme(_Builtin):
    def __init__(self, name, reduce, ufunc, initial):
        _Builtin.__init__(self, name, reduce)
        self.ufunc = ufunc
        self.initial = initial

    def binned(self, rows, values, nrows, fill):
        out = numpy.full(nrows, self.initial, dtype='f8')
        self.ufunc.at(out, rows, values)
        out[numpy.bincount(rows, minlength=nrows) == 0] = fill
        return out

class _Count(_Builtin):
    def empty(self, fill):
        return 0.0

    def binned(self, rows, values, nrows, fill):
        return numpy.bincount(rows, minlength=nrows).astype('f8')

COMBINERS = {
    'sum' : _Sum('sum', numpy.sum),
    'mean' : _Mean('mean', numpy.mean),
    'min' : _Extreme('min', numpy.min, numpy.minimum, numpy.inf),
    'max' : _Extreme('max', numpy.max, numpy.maximum, -numpy.inf),
    'count' : _Count('count', lambda values: float(len(values))),
}

def get_combiner(combiner):
    """ Returns the Combiner of a name, a reduce callable or a Combiner. """
    if isinstance(combiner, Combiner):
        return combiner
    if isinstance(combiner, str):
        try:
            return COMBINERS[combiner.lower()]
        except KeyError:
            raise ValueError("unknown combiner %r, expected one of %s or a callable"
                    % (combiner, ', '.join(sorted(COMBINERS)))) from None
    if callable(combiner):
        return Combiner(combiner)
    raise TypeError("combiner shall be a name or a callable, got %r" % (combiner,))

BinSpec = namedtuple('BinSpec', ['axis', 'tolerance', 'tolerance_type', 'combiner', 'fill'])
BinSpec.__doc__ = """ The immutable configuration of a binning.

    A BinSpec and the raw data of a column is all a worker needs to bin the
    column; it is sent to the workers instead of the store.
"""

def make_spec(axis, tolerance=0.0, tolerance_type='absolute', combiner='sum', fill=0.0):
    """ Validate and bundle the binning parameters into a :py:class:`BinSpec`. """
    if not isinstance(axis, BinAxis):
        axis = BinAxis(axis)
    tolerance = float(tolerance)
    if not numpy.isfinite(tolerance) or tolerance < 0:
        raise ValueError("tolerance shall be finite and non-negative, got %g" % tolerance)
    if tolerance_type not in ('absolute', 'relative'):
        raise ValueError("tolerance_type shall be 'absolute' or 'relative', got %r"
                % (tolerance_type,))
    return BinSpec(axis, tolerance, tolerance_type, get_combiner(combiner), float(fill))

def _halfwidth(spec, centers):
    if spec.tolerance_type == 'relative':
        return spec.tolerance * numpy.abs(centers)
    return spec.tolerance

def _candidates(spec, keys):
    """ Candidate bin ranges [lo, hi) of every key.

        The ranges are slightly wider than needed; candidates are
        confirmed by the exact distance test.
    """
    axis = spec.axis
    centers = axis.centers
    nrows = len(centers)
    if spec.tolerance_type == 'relative':
        # the widest window on the axis bounds every window
        h = spec.tolerance * numpy.abs(centers).max()
    else:
        h = spec.tolerance

    if axis.step is not None:
        j = numpy.rint((keys - axis.start) / axis.step)
        m = numpy.ceil(h / axis.step) + 1
        lo = numpy.clip(j - m, 0, nrows)
        hi = numpy.clip(j + m + 1, 0, nrows)
    else:
        lo = numpy.clip(numpy.searchsorted(centers, keys - h, 'left') - 1, 0, nrows)
        hi = numpy.clip(numpy.searchsorted(centers, keys + h, 'right') + 1, 0, nrows)
    return lo.astype('i8'), hi.astype('i8')

def _pairs(spec, keys):
    """ All (position, row) pairs with the key at position within the window of row. """
    lo, hi = _candidates(spec, keys)
    counts = numpy.maximum(hi - lo, 0)
    positions = numpy.repeat(numpy.arange(len(keys)), counts)
    starts = numpy.cumsum(counts) - counts
    rows = lo[positions] + numpy.arange(len(positions)) - starts[positions]

    centers = spec.axis.centers[rows]
    hit = numpy.abs(keys[positions] - centers) <= _halfwidth(spec, centers)
    return positions[hit], rows[hit]

def _asarrays(keys, values):
    keys = numpy.asarray(keys, dtype='f8')
    values = numpy.asarray(values, dtype='f8')
    if keys.shape != values.shape or keys.ndim != 1:
        raise ValueError("keys and values shall be one dimensional of the same length")
    # keys that are nan or infinite never fall into a bin
    finite = numpy.isfinite(keys)
    if not finite.all():
        keys = keys[finite]
        values = values[finite]
    return keys, values

def bin_column(spec, keys, values):
    """ Bin a column in a single pass.

        Parameters
        ----------
        spec : BinSpec
        keys, values : array_like
            the column, one dimensional and of the same length.

        Returns
        -------
        column : ndarray
            float64 array of len(spec.axis) bins.

    """
    keys, values = _asarrays(keys, values)
    nrows = len(spec.axis)
    if len(keys) == 0:
        return numpy.full(nrows, spec.combiner.empty(spec.fill), dtype='f8')
    positions, rows = _pairs(spec, keys)
    return spec.combiner.binned(rows, values[positions], nrows, spec.fill)

def bin_cell(spec, keys, values, r):
    """ Bin r of a column, by scanning the whole column.

        The values in the window are combined in the same order and by
        the same reduction as :py:func:`bin_column`, thus the two agree
        to the last bit.

        Returns
        -------
        value : float
    """
    keys, values = _asarrays(keys, values)
    center = spec.axis.centers[r]
    hit = numpy.abs(keys - center) <= _halfwidth(spec, center)
    values = values[hit]
    rows = numpy.zeros(len(values), dtype='intp')
    return float(spec.combiner.binned(rows, values, 1, spec.fill)[0])
