"""
Quick look at evselect rate sets

Used to print the numbers behind a flare or flux threshold next to the
plot the user is looking at.
"""
import astropy.io.fits as pyfits
import numpy as np

from .gti import GTI


def read_lightcurve(filename):
    #
    # TIME and RATE columns of the RATE extension, dropping empty bins
    #
    with pyfits.open(filename) as f:
        data = f['RATE'].data
        time = np.array(data['TIME'], dtype=float)
        rate = np.array(data['RATE'], dtype=float)

    good = np.isfinite(rate)
    return time[good], rate[good]


def rate_summary(filename):
    time, rate = read_lightcurve(filename)
    if len(rate) == 0:
        return {'nbins': 0}

    return {'nbins': len(rate),
            'tstart': time.min(),
            'tstop': time.max(),
            'mean': float(np.mean(rate)),
            'median': float(np.median(rate)),
            'std': float(np.std(rate)),
            'min': float(np.min(rate)),
            'max': float(np.max(rate))}


def format_summary(summary):
    if summary['nbins'] == 0:
        return "no populated bins"
    return ("%d bins, rate mean %.4g median %.4g std %.4g min %.4g max %.4g counts/s"
            % (summary['nbins'], summary['mean'], summary['median'], summary['std'],
               summary['min'], summary['max']))


def mean_rate(filename, gti=None):
    #
    # mean count rate, optionally only over the bins inside a GTI
    # (a GTI object or the name of a GTI file)
    #
    time, rate = read_lightcurve(filename)

    if gti is not None:
        if not isinstance(gti, GTI):
            gti = GTI.read(gti)
        mask = gti.contains(time)
        rate = rate[mask]

    if len(rate) == 0:
        raise ValueError("No lightcurve bins to average in %s" % filename)

    return float(np.mean(rate))
