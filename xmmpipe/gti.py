import os
import astropy.io.fits as pyfits
import numpy as np


class GTI(object):
    #
    # Good Time Interval table as written by tabgtigen
    #

    def __init__(self):
        self.start_time = []
        self.stop_time = []
        self.interval = []

    def __len__(self):
        return len(self.start_time)

    def add_row(self, start, stop):
        #
        # add an 'on' interval
        #
        self.start_time.append(start)
        self.stop_time.append(stop)

    def sort(self):
        #
        # sort the GTI intervals in ascending order of their start time
        # NOTE: there is no check that the intervals do not overlap!
        #
        tab = sorted(zip(self.start_time, self.stop_time))
        self.start_time = [start for (start, stop) in tab]
        self.stop_time = [stop for (start, stop) in tab]

    def calculate_intervals(self):
        self.interval = [(stop - start) for (start, stop)
                         in zip(self.start_time, self.stop_time)]

    def on_time(self):
        #
        # total on time of all intervals in this GTI
        #
        self.calculate_intervals()
        return sum(self.interval)

    def contains(self, times):
        #
        # boolean mask of the times that fall inside any interval
        #
        times = np.asarray(times)
        mask = np.zeros(times.shape, dtype=bool)
        for start, stop in zip(self.start_time, self.stop_time):
            mask |= (times >= start) & (times < stop)
        return mask

    def gti_hdu(self):
        self.sort()

        start_col = pyfits.Column(name='START', format='1D', unit='s', array=self.start_time)
        stop_col = pyfits.Column(name='STOP', format='1D', unit='s', array=self.stop_time)
        hdu = pyfits.BinTableHDU.from_columns(pyfits.ColDefs([start_col, stop_col]))

        hdu.header['EXTNAME'] = ('STDGTI', 'The name of this table')
        hdu.header['HDUCLASS'] = ('OGIP', 'format conforms to OGIP standard')
        hdu.header['HDUCLAS1'] = ('GTI', 'table contains Good Time Intervals')
        hdu.header['HDUCLAS2'] = ('STANDARD', 'standard Good Time Interval table')
        hdu.header['ONTIME'] = (self.on_time(), '[s] sum of all Good Time Intervals')
        if len(self) > 0:
            hdu.header['TSTART'] = (min(self.start_time), '[s] Lower bound of first GTI')
            hdu.header['TSTOP'] = (max(self.stop_time), '[s] Upper bound of last GTI')
        hdu.header['TIMEUNIT'] = ('s', 'All times in s unless specified otherwise')
        hdu.header['TIMESYS'] = ('TT', 'XMM time will be TT (Terrestial Time)')
        hdu.header['MJDREF'] = (5.08140000000000E+04, '1998-01-01T00:00:00 (TT) expressed in MJD')
        return hdu

    def write(self, filename):
        if os.path.exists(filename):
            os.remove(filename)
        hdulist = pyfits.HDUList([pyfits.PrimaryHDU(), self.gti_hdu()])
        hdulist.writeto(filename)

    @staticmethod
    def read(filename, extension=1):
        #
        # read the START/STOP columns of a GTI extension
        # (tabgtigen writes STDGTI as the first extension)
        #
        gti = GTI()
        with pyfits.open(filename) as f:
            data = f[extension].data
            if data is not None:
                for start, stop in zip(data['START'], data['STOP']):
                    gti.add_row(float(start), float(stop))
        return gti
