"""
Shared fixtures

The SAS/HEASOFT tasks are replaced by FakeSAS, which records every command
line and creates the files a real task would have written, so the stages can
run end to end without SAS installed.
"""
import os

import astropy.io.fits as pyfits
import numpy as np
import pytest

from xmmpipe.gti import GTI
from xmmpipe.observation import Observation

OBSID = '0123456789'

# parameters naming a file the task writes
OUTPUT_KEYS = ('filteredset', 'spectrumset', 'imageset', 'rmfset', 'arfset', 'groupedset',
               'outfile', 'plotfile', 'outputsrcfilename')


def write_lightcurve(path, times=None, rates=None):
    if times is None:
        times = np.arange(0., 100., 1.)
    if rates is None:
        rates = np.where(times < 50, 1.0, 3.0)

    cols = [pyfits.Column(name='TIME', format='1D', array=times),
            pyfits.Column(name='RATE', format='1E', array=rates)]
    hdu = pyfits.BinTableHDU.from_columns(cols)
    hdu.header['EXTNAME'] = 'RATE'
    pyfits.HDUList([pyfits.PrimaryHDU(), hdu]).writeto(path, overwrite=True)


def write_spectrum(path):
    cols = [pyfits.Column(name='CHANNEL', format='1J', array=np.arange(10)),
            pyfits.Column(name='COUNTS', format='1J', array=np.ones(10, dtype=int))]
    hdu = pyfits.BinTableHDU.from_columns(cols)
    hdu.header['EXTNAME'] = 'SPECTRUM'
    hdu.header['BACKFILE'] = 'none'
    hdu.header['RESPFILE'] = 'none'
    pyfits.HDUList([pyfits.PrimaryHDU(), hdu]).writeto(path, overwrite=True)


def touch(path):
    with open(path, 'w') as f:
        f.write('')


class FakeSAS(object):

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.empty_gtis = set()
        self.missing_gtis = set()
        self.skip_outputs = set()

    def __call__(self, args, cwd=None, env=None, stdin=None, stdout=None, stderr=None):
        self.calls.append((list(args), cwd, env))
        return FakeProcess(self, list(args), cwd)

    #-- inspection -----------------------------------------------------------

    def tasks(self):
        return [args[0] for args, cwd, env in self.calls]

    def task_calls(self, task):
        return [args for args, cwd, env in self.calls if args[0] == task]

    def task_cwds(self, task):
        return [cwd for args, cwd, env in self.calls if args[0] == task]

    @staticmethod
    def param(args, key):
        for a in args[1:]:
            if a.startswith(key + '='):
                return a[len(key) + 1:]
        return None

    #-- products ---------------------------------------------------------------

    def _path(self, cwd, path):
        if cwd is not None and not os.path.isabs(path):
            return os.path.join(cwd, path)
        return path

    def make_outputs(self, args, cwd):
        task = args[0]
        if task in self.skip_outputs:
            return

        for key in OUTPUT_KEYS:
            value = self.param(args, key)
            if value is not None:
                touch(self._path(cwd, value))

        rateset = self.param(args, 'rateset')
        if rateset is not None:
            write_lightcurve(self._path(cwd, rateset))

        gtiset = self.param(args, 'gtiset')
        if gtiset is not None and os.path.basename(gtiset) not in self.missing_gtis:
            gti = GTI()
            if os.path.basename(gtiset) not in self.empty_gtis:
                gti.add_row(0., 100.)
            gti.write(self._path(cwd, gtiset))

        if task == 'cifbuild':
            touch(os.path.join(cwd, 'ccf.cif'))
        elif task == 'odfingest':
            touch(os.path.join(cwd, '0345_%s_SCX00000SUM.SAS' % OBSID))
        elif task == 'epproc':
            touch(os.path.join(cwd, '3278_%s_EPN_S003_TimingEvts.ds' % OBSID))
        elif task == 'rgsproc':
            self._rgsproc(args, cwd)
        elif task == 'addarf':
            touch(self._path(cwd, args[3]))
        elif task == 'fplot':
            device = self.param(args, 'device')
            touch(self._path(cwd, device.rsplit('/', 1)[0]))
        elif task == 'convert':
            touch(self._path(cwd, args[-1]))

    def _rgsproc(self, args, cwd):
        for n, expo in ((1, 'S004'), (2, 'S005')):
            stem = 'P%sR%d%s' % (OBSID, n, expo)
            if self.param(args, 'entrystage') is None:
                for kind in ('EVENLI0000', 'SRCLI_0000', 'merged0000'):
                    touch(os.path.join(cwd, '%s%s.FIT' % (stem, kind)))
            else:
                for order in self.param(args, 'orders').split():
                    write_spectrum(os.path.join(cwd, '%sSRSPEC%s001.FIT' % (stem, order)))
                    write_spectrum(os.path.join(cwd, '%sBGSPEC%s001.FIT' % (stem, order)))
                    touch(os.path.join(cwd, '%sRSPMAT%s001.FIT' % (stem, order)))


class FakeProcess(object):

    def __init__(self, sas, args, cwd):
        self.sas = sas
        self.args = args
        self.cwd = cwd

    def wait(self):
        returncode = self.sas.failures.get(self.args[0], 0)
        if returncode == 0:
            self.sas.make_outputs(self.args, self.cwd)
        self.returncode = returncode
        return returncode


@pytest.fixture
def fake_sas(monkeypatch):
    sas = FakeSAS()
    monkeypatch.setattr('xmmpipe.sas.subprocess.Popen', sas)
    return sas


@pytest.fixture
def environ():
    return {'SAS_CCFPATH': '/data/ccf', 'PATH': '/usr/bin'}


@pytest.fixture
def odfdir(tmp_path):
    d = tmp_path / 'data' / OBSID
    d.mkdir(parents=True)
    return d


@pytest.fixture
def obs(tmp_path, odfdir, environ):
    # an observation that has been through cifbuild and odfingest
    touch(str(odfdir / 'ccf.cif'))
    touch(str(odfdir / ('0345_%s_SCX00000SUM.SAS' % OBSID)))
    return Observation(project_root=str(tmp_path), obsid=OBSID, environ=environ)


@pytest.fixture
def pn_obs(obs):
    # plus the epproc event list
    obs.makedirs(obs.pndir)
    touch(os.path.join(obs.pndir, '3278_%s_EPN_S003_TimingEvts.ds' % OBSID))
    return obs


@pytest.fixture
def clean_obs(pn_obs):
    touch(pn_obs.clean_evl)
    return pn_obs


@pytest.fixture
def rgs_obs(obs):
    # plus the rgsproc event, source and merged lists
    obs.makedirs(obs.rgsdir)
    for n, expo in ((1, 'S004'), (2, 'S005')):
        for kind in ('EVENLI0000', 'SRCLI_0000', 'merged0000'):
            touch(os.path.join(obs.rgsdir, 'P%sR%d%s%s.FIT' % (OBSID, n, expo, kind)))
    return obs
