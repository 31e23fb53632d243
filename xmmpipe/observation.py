import os
import re
import glob
import logging
import tarfile

from .errors import ConfigError, MissingInputError, MissingProductError
from .sas import run_task, require_output, find_first, sas_environment

logger = logging.getLogger(__name__)

OBSID_RE = re.compile(r'^[0-9]{10}$')


class Observation(object):
    #
    # paths and SAS environment for one XMM-Newton observation
    #
    # data/<obsid> holds the ODFs (plus ccf.cif and the *SUM.SAS summary once
    # set up) and products/<obsid> everything the reduction creates
    #

    def __init__(self, project_root=None, obsid=None, odf_dir=None, environ=None):
        self.environ = dict(os.environ if environ is None else environ)

        self.project_root = os.path.abspath(project_root or self.environ.get('PROJECT_ROOT') or '.')

        if not obsid:
            obsid = self.environ.get('OBSID')
        if not odf_dir:
            odf_dir = self.environ.get('OBS_DIR_ODF')

        if odf_dir:
            self.odfdir = os.path.abspath(odf_dir.rstrip('/'))
            if not obsid:
                obsid = self._obsid_from_path(self.odfdir)
        elif obsid:
            self.odfdir = os.path.join(self.project_root, 'data', obsid)
        else:
            raise ConfigError("Need an ObsID or an ODF directory (set OBSID or OBS_DIR_ODF)")

        self.obsid = obsid

        self.proddir = os.path.join(self.project_root, 'products', self.obsid)
        self.pndir = self.proddir + '/pn'
        self.rgsdir = self.proddir + '/rgs'
        self.pileupdir = self.pndir + '/pile_up'
        self.specdir = self.pndir + '/spec'
        self.fluxdir = self.specdir + '/flux_resolved'
        self.rgsplotdir = self.rgsdir + '/plots'
        self.rgsfiltdir = self.rgsdir + '/filt'
        self.rgstimedir = self.rgsdir + '/time_intervals'
        self.rgsfluxdir = self.rgsdir + '/flux_resolved'

        self.cif = self.odfdir + '/ccf.cif'
        self.clean_evl = self.pndir + '/pn_clean.evt'

        self.envvars = None

    @staticmethod
    def _obsid_from_path(odfdir):
        obsid = os.path.basename(odfdir)
        if OBSID_RE.match(obsid):
            logger.info("Determined ObsID: %s", obsid)
            return obsid
        logger.warning("Could not determine a 10-digit ObsID from the ODF path '%s' (got '%s'), "
                       "using 'unknown_obsid'", odfdir, obsid)
        return 'unknown_obsid'

    #-- Observation status checks --------------------------------------------

    def _check_odfs_extracted(self):
        return len(glob.glob(self.odfdir + '/*.FIT')) > 0

    def _check_cif(self):
        return os.path.exists(self.cif)

    def summary_file(self):
        return find_first(self.odfdir, '*SUM.SAS')

    def establish_sas(self):
        #
        # point SAS_CCF and SAS_ODF at the files made by cifbuild and odfingest
        # (needed by every stage after the setup)
        #
        if not os.path.isdir(self.odfdir):
            raise MissingInputError("ODF directory not found: %s" % self.odfdir)

        summary = self.summary_file()
        if summary is None:
            raise MissingInputError("Cannot find *SUM.SAS file in %s. Has the setup stage been run?" % self.odfdir)
        if not self._check_cif():
            raise MissingInputError("Cannot find CCF file %s. Has the setup stage been run?" % self.cif)

        self.envvars = sas_environment(odf=summary, ccf=self.cif, base=self.environ)
        logger.info("SAS_CCF: %s", os.path.basename(self.cif))
        logger.info("SAS_ODF: %s", os.path.basename(summary))
        return self.envvars

    @property
    def env(self):
        if self.envvars is None:
            self.establish_sas()
        return self.envvars

    def makedirs(self, *dirs):
        for d in dirs:
            if not os.path.exists(d):
                os.makedirs(d)

    #-- Initial data reduction -----------------------------------------------

    def extract_odfs(self):
        #
        # extract ODFs from tarball if needed
        #
        if self._check_odfs_extracted():
            return

        logger.info("Extracting ODFs...")
        for odftar in sorted(glob.glob(self.odfdir + '/*.tar*')):
            with tarfile.open(odftar) as tar:
                tar.extractall(self.odfdir)
        # then need to extract the next level of tarballs
        for odftar2 in sorted(glob.glob(self.odfdir + '/*.TAR')):
            with tarfile.open(odftar2) as tar:
                tar.extractall(self.odfdir)

    def cifbuild(self):
        if not self.environ.get('SAS_CCFPATH'):
            raise ConfigError("Environment variable SAS_CCFPATH is not set. "
                              "Point it at your CCF repository.")
        if not os.path.isdir(self.odfdir):
            raise MissingInputError("ODF directory not found: %s" % self.odfdir)

        logger.info("Building calibration index...")
        env = sas_environment(odf=self.odfdir, base=self.environ)
        run_task(['cifbuild'], cwd=self.odfdir, env=env)

        return require_output(self.cif, 'cifbuild')

    def odfingest(self):
        logger.info("Ingesting ODFs...")
        env = sas_environment(odf=self.odfdir, ccf=self.cif, base=self.environ)
        run_task(['odfingest'], cwd=self.odfdir, env=env, logfile='odfingest.log')

        summary = self.summary_file()
        if summary is None:
            raise MissingProductError('odfingest', os.path.join(self.odfdir, '*SUM.SAS'))
        return summary

    #-- Pipeline reprocessing ------------------------------------------------

    def epproc(self):
        self.makedirs(self.pndir)
        logger.info("Running epproc to produce EPIC-pn event lists...")
        run_task(['epproc'], cwd=self.pndir, env=self.env, logfile='epproc.log')
        logger.info("epproc complete. Products are in %s", self.pndir)

    def rgsproc(self):
        self.makedirs(self.rgsdir)
        logger.info("Running rgsproc to process RGS data...")
        run_task(['rgsproc'], cwd=self.rgsdir, env=self.env, logfile='rgsproc.log')
        logger.info("rgsproc complete. Products are in %s", self.rgsdir)

    def setup_and_reprocess(self, pn=True, rgs=True):
        logger.info("Using ODF from: %s", self.odfdir)
        logger.info("Output products will go to: %s", self.proddir)

        self.extract_odfs()
        self.cifbuild()
        self.odfingest()
        self.establish_sas()

        if pn:
            self.epproc()
        if rgs:
            self.rgsproc()

        logger.info("Reprocessing finished for ObsID %s", self.obsid)
