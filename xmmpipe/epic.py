import os
import logging

from .errors import ConfigError, MissingInputError
from .gti import GTI
from .lightcurve import rate_summary, format_summary, mean_rate
from .plotting import plot_lightcurve, convert_plot
from .sas import run_task, require_output, find_first, join_expr, remove_files
from .spec_util import SpectrumFiles, PN_BASE_FILTER, extract_pn_products

logger = logging.getLogger(__name__)

# high energy, single pixel events trace the particle background
BKG_FLARE_EXPR = '#XMMEA_EP && (PI in [10000:12000]) && (PATTERN==0)'
# good science events, dropping low energy noise
SCIENCE_EXPR = '#XMMEA_EP && (PI>150)'
# full source region rate used to split flux states
REF_LC_EXPR = '(FLAG==0) && (PATTERN<=4) && PI in [500:10000]'


class EPICPipeline(object):
    #
    # EPIC-pn timing mode reduction for one observation, from the epproc event
    # list to grouped spectra
    #
    # src_rawx/bkg_rawx are the RAWX selections of the source and background
    # columns; excision removes the piled-up core from the source region
    #

    def __init__(self, obs, src_rawx='RAWX in [27:47]', bkg_rawx='RAWX in [3:5]',
                 excision='!(RAWX in [36:38])', piled_up=False):
        self.obs = obs
        self.src_rawx = src_rawx
        self.bkg_rawx = bkg_rawx
        self.excision = excision
        self.piled_up = piled_up

        self.bkg_lc = self.obs.pndir + '/pn_bkg_lc.fits'
        self.bkg_gti = self.obs.pndir + '/gti_bkg.fits'
        self.image = self.obs.pndir + '/pn_rawx_rawy_image.fits'

    @property
    def env(self):
        return self.obs.env

    def _source_excision(self):
        return self.excision if self.piled_up else None

    def _require_clean_evl(self):
        if not os.path.exists(self.obs.clean_evl):
            raise MissingInputError("Could not find %s. Run the background filtering stage first."
                                    % self.obs.clean_evl)
        return self.obs.clean_evl

    def find_evl(self):
        #
        # the epproc event list (anywhere under the pn directory)
        #
        evl = find_first(self.obs.pndir, '*EPN*Evts.ds', recursive=True)
        if evl is None:
            raise MissingInputError("Could not find an EPIC-pn event file (*EPN*Evts.ds) in %s. "
                                    "Has epproc been run?" % self.obs.pndir)
        logger.info("Using PN event file: %s", os.path.basename(evl))
        return evl

    #-- Background flares --------------------------------------------------------

    def filter_background(self, apply_filter=False, rate_threshold=0.4, timebin=200):
        #
        # high energy background lightcurve and plots, then the clean event
        # file, flare filtered with a GTI on RATE<=rate_threshold if requested
        #
        evl = self.find_evl()
        env = self.env

        logger.info("Creating background lightcurve: %s", os.path.basename(self.bkg_lc))
        args = ['evselect',
                'table=' + evl,
                'withrateset=yes',
                'rateset=' + self.bkg_lc,
                'maketimecolumn=yes',
                'timebinsize=%g' % timebin,
                'makeratecolumn=yes',
                'expression=' + BKG_FLARE_EXPR]
        run_task(args, env=env)
        require_output(self.bkg_lc, 'evselect')

        logger.info("Creating diagnostic plots...")
        plot_lightcurve('pn_bkg_lc.fits', 'pn_bkg_lc.ps', cwd=self.obs.pndir, env=env)
        convert_plot('pn_bkg_lc.ps', 'pn_bkg_lc.jpg', cwd=self.obs.pndir)

        logger.info("Background lightcurve: %s", format_summary(rate_summary(self.bkg_lc)))

        expr = SCIENCE_EXPR
        if apply_filter:
            logger.info("Applying flare filter, count rate threshold <= %g", rate_threshold)
            args = ['tabgtigen',
                    'table=' + self.bkg_lc,
                    'expression=RATE<=%s' % rate_threshold,
                    'gtiset=' + self.bkg_gti]
            run_task(args, env=env)
            require_output(self.bkg_gti, 'tabgtigen')

            ontime = GTI.read(self.bkg_gti).on_time()
            logger.info("Good time after flare filtering: %.1f s", ontime)
            if ontime <= 0:
                logger.warning("The flare filter leaves no good time, raise the rate threshold")

            expr = join_expr(SCIENCE_EXPR, 'gti(%s,TIME)' % self.bkg_gti)
        else:
            logger.info("Skipping flare filter (apply_filter = no)")

        logger.info("Creating clean event file: %s", os.path.basename(self.obs.clean_evl))
        args = ['evselect',
                'table=' + evl,
                'withfilteredset=yes',
                'filteredset=' + self.obs.clean_evl,
                'keepfilteroutput=yes',
                'expression=' + expr,
                'updateexposure=yes']
        run_task(args, env=env)
        return require_output(self.obs.clean_evl, 'evselect')

    #-- Pile-up --------------------------------------------------------------

    def _filter_events(self, evl, outfile, expr):
        args = ['evselect',
                'table=' + evl,
                'withfilteredset=yes',
                'filteredset=' + outfile,
                'keepfilteroutput=yes',
                'expression=' + expr]
        run_task(args, env=self.env)
        return require_output(outfile, 'evselect')

    def _epat_plot(self, src_evl, bkg_evl, name):
        #
        # epatplot only writes its plot into the current directory
        #
        pdf = 'epatplot_%s.pdf' % name
        args = ['epatplot',
                'set=' + src_evl,
                'plotfile=' + pdf,
                'useplotfile=yes',
                'withbackgroundset=yes',
                'backgroundset=' + bkg_evl]
        run_task(args, cwd=self.obs.pileupdir, env=self.env)
        require_output(os.path.join(self.obs.pileupdir, pdf), 'epatplot')

        return convert_plot(pdf, 'epatplot_%s.jpg' % name, page=1, density=300, cwd=self.obs.pileupdir)

    def check_pileup(self, run_excision_test=True):
        evl = self._require_clean_evl()
        self.obs.makedirs(self.obs.pileupdir)

        logger.info("Creating RAWX/RAWY image: %s", os.path.basename(self.image))
        args = ['evselect',
                'table=' + evl,
                'imageset=' + self.image,
                'withimageset=yes',
                'xcolumn=RAWX',
                'ycolumn=RAWY',
                'imagebinning=binSize',
                'ximagebinsize=1',
                'yimagebinsize=1',
                'expression=' + PN_BASE_FILTER]
        run_task(args, env=self.env)
        require_output(self.image, 'evselect')

        bkg_evl = self.obs.pndir + '/pn_bkg_temp.evt'
        full_evl = self.obs.pndir + '/pn_src_full_temp.evt'
        excised_evl = self.obs.pndir + '/pn_src_excised_temp.evt'

        plots = []
        try:
            logger.info("Creating temporary background event file...")
            self._filter_events(evl, bkg_evl, join_expr(PN_BASE_FILTER, self.bkg_rawx))

            logger.info("Creating FULL region pile-up plot...")
            self._filter_events(evl, full_evl, join_expr(PN_BASE_FILTER, self.src_rawx))
            plots.append(self._epat_plot(full_evl, bkg_evl, 'FULL'))

            if run_excision_test:
                expr = join_expr(PN_BASE_FILTER, self.src_rawx, self.excision)
                logger.info("Creating EXCISED region pile-up plot, filter: %s", expr)
                self._filter_events(evl, excised_evl, expr)
                plots.append(self._epat_plot(excised_evl, bkg_evl, 'EXCISED'))
        finally:
            logger.info("Cleaning up temporary event files...")
            remove_files(bkg_evl, full_evl, excised_evl)

        return [os.path.join(self.obs.pileupdir, p) for p in plots]

    #-- Spectra ----------------------------------------------------------------

    def extract_spectrum(self, min_counts=25):
        evl = self._require_clean_evl()

        if self.piled_up:
            logger.info("*** PILE-UP CORRECTION ENABLED ***")
        else:
            logger.info("*** STANDARD EXTRACTION (NO PILE-UP) ***")

        files = SpectrumFiles.standard(self.obs.specdir)
        extract_pn_products(evl, files, self.src_rawx, self.bkg_rawx, min_counts, env=self.env,
                            excision=self._source_excision(), tempdir=self.obs.pndir)
        return files

    def _make_gti(self, table, expr, gtifile, check=True):
        args = ['tabgtigen',
                'table=' + table,
                'expression=' + expr,
                'gtiset=' + gtifile]
        run_task(args, env=self.env, check=check)

    def extract_time_spectra(self, intervals, min_counts=25):
        #
        # one set of products per (name, time expression) pair
        #
        evl = self._require_clean_evl()

        if len(intervals) == 0:
            logger.warning("No time intervals defined, nothing to extract")
            return []

        self.obs.makedirs(self.obs.specdir)

        products = []
        for name, expr in intervals:
            logger.info("Processing interval: %s %s", name, expr)

            gtifile = '%s/temp_%s_gti.fits' % (self.obs.specdir, name)
            self._make_gti(evl, expr, gtifile)
            require_output(gtifile, 'tabgtigen')

            files = SpectrumFiles.interval(self.obs.specdir, name)
            try:
                extract_pn_products(evl, files, self.src_rawx, self.bkg_rawx, min_counts, env=self.env,
                                    extra_terms=['gti(%s, TIME)' % gtifile],
                                    excision=self._source_excision(), tempdir=self.obs.pndir,
                                    writedss=True)
            finally:
                remove_files(gtifile)

            products.append(files)

        return products

    def _state_gti_ok(self, gtifile, suffix):
        if not os.path.exists(gtifile):
            logger.warning("No data found for %s. Skipping.", suffix)
            return False
        if GTI.read(gtifile).on_time() <= 0:
            logger.warning("GTI for %s has no good time. Skipping.", suffix)
            return False
        return True

    def extract_flux_resolved(self, time_filter, threshold, label='Dipping', timebin=1.0, min_counts=10):
        #
        # split a time window into low and high count rate states at threshold
        # (counts/s, or 'mean' for the mean rate in the window) and extract
        # the products of each state
        #
        evl = self._require_clean_evl()
        self.obs.makedirs(self.obs.fluxdir)

        ref_lc = self.obs.fluxdir + '/temp_calc_rate.fits'

        logger.info("Calculating count rates (%gs lightcurve)...", timebin)
        args = ['evselect',
                'table=' + evl,
                'withrateset=yes',
                'rateset=' + ref_lc,
                'timebinsize=%g' % timebin,
                'maketimecolumn=yes',
                'makeratecolumn=yes',
                'expression=' + join_expr(REF_LC_EXPR, self.src_rawx),
                'energycolumn=PI']
        run_task(args, env=self.env)
        require_output(ref_lc, 'evselect')

        products = []
        gtis = []
        try:
            if threshold == 'mean':
                window_gti = self.obs.fluxdir + '/gti_window.fits'
                gtis.append(window_gti)
                self._make_gti(ref_lc, time_filter, window_gti)
                require_output(window_gti, 'tabgtigen')
                try:
                    threshold = mean_rate(ref_lc, window_gti)
                except ValueError:
                    raise ConfigError("Time filter %s selects no lightcurve bins" % time_filter)
                logger.info("Mean count rate in %s: %.4g counts/s", time_filter, threshold)

            logger.info("Flux threshold: %g counts/s", threshold)

            states = [('%s_LowFlux' % label, '%s && (RATE < %s)' % (time_filter, threshold)),
                      ('%s_HighFlux' % label, '%s && (RATE >= %s)' % (time_filter, threshold))]

            for suffix, expr in states:
                logger.info("Processing: %s", suffix)

                gtifile = '%s/gti_%s.fits' % (self.obs.fluxdir, suffix)
                gtis.append(gtifile)
                self._make_gti(ref_lc, expr, gtifile, check=False)
                if not self._state_gti_ok(gtifile, suffix):
                    continue

                files = SpectrumFiles.flux_state(self.obs.fluxdir, suffix)
                extract_pn_products(evl, files, self.src_rawx, self.bkg_rawx, min_counts, env=self.env,
                                    extra_terms=['gti(%s, TIME)' % gtifile],
                                    excision=self._source_excision(), tempdir=self.obs.fluxdir,
                                    writedss=True)
                products.append(files)
        finally:
            remove_files(ref_lc, *gtis)

        return products
