import os
import glob
import shutil
import logging

from .errors import ConfigError, MissingInputError
from .gti import GTI
from .lightcurve import rate_summary, format_summary, mean_rate
from .plotting import plot_lightcurve, convert_plot
from .sas import run_task, require_output, find_first, join_expr, remove_files
from .spec_util import group_spec, link_spectra, check_group_type
from .epic import REF_LC_EXPR

logger = logging.getLogger(__name__)

RGS_UNITS = (1, 2)

# rgsproc inputs copied into each working directory for a re-run from the filter stage
RGS_INPUT_PATTERNS = ('*EVENLI*.FIT', '*SRCLI*.FIT', '*merged*.FIT')


class RGSPipeline(object):
    #
    # RGS1/RGS2 reduction for one observation: diagnostic plots, flare
    # filtering and time or flux resolved rgsproc re-runs
    #

    def __init__(self, obs, orders='1 2', source_id=1):
        self.obs = obs
        self.orders = orders.split()
        self.source_id = source_id

        self.evt = {}
        self.src = {}
        self.merged = {}

    @property
    def env(self):
        return self.obs.env

    def find_files(self, require_merged=False):
        #
        # the event, source and merged lists written by rgsproc, per RGS unit
        #
        for n in RGS_UNITS:
            self.evt[n] = find_first(self.obs.rgsdir, '*R%dS*EVENLI*.FIT' % n)
            self.src[n] = find_first(self.obs.rgsdir, '*R%dS*SRCLI*.FIT' % n)
            self.merged[n] = find_first(self.obs.rgsdir, '*R%dS*merged*.FIT' % n)

            for kind, files in (('Event', self.evt), ('Source', self.src), ('Merged', self.merged)):
                if files[n] is not None:
                    logger.info(" RGS%d %s: %s", n, kind, os.path.basename(files[n]))

        if not any(self.evt.values()):
            raise MissingInputError("No RGS event lists (*EVENLI*.FIT) found in %s. Has rgsproc been run?"
                                    % self.obs.rgsdir)
        if not any(self.src.values()):
            raise MissingInputError("No RGS source lists (*SRCLI*.FIT) found in %s" % self.obs.rgsdir)
        if require_merged and not any(self.merged.values()):
            raise MissingInputError("No RGS merged event lists (*merged*.FIT) found in %s" % self.obs.rgsdir)

        return self.evt, self.src, self.merged

    def units(self):
        # RGS units with both an event list and a source list
        return [n for n in RGS_UNITS if self.evt.get(n) and self.src.get(n)]

    def flare_gtis(self):
        gtis = [self.obs.rgsdir + '/gti_rgs%d.fits' % n for n in RGS_UNITS]
        return [g for g in gtis if os.path.exists(g)]

    #-- Stage 2b: diagnostics and flare filtering ----------------------------

    def _region_expr(self, n, region):
        return 'REGION(%s:RGS%d_%s,M_LAMBDA,XDSP_CORR)' % (os.path.basename(self.src[n]), n, region)

    def _plot_lc(self, lcfile, name):
        #
        # PS plot of a lightcurve in the plot directory, kept as a PNG
        #
        ps = 'plots/%s.ps' % name
        plot_lightcurve(lcfile, ps, cwd=self.obs.rgsdir, env=self.env, driver='/CPS')
        convert_plot(ps, 'plots/%s.png' % name, density=300, cwd=self.obs.rgsdir, remove=True)
        return os.path.join(self.obs.rgsplotdir, name + '.png')

    def diagnostic_plots(self, n):
        #
        # dispersion vs cross-dispersion and PI images with the extraction
        # regions drawn by rgsimplot
        #
        evt = os.path.basename(self.evt[n])
        spatial_img = 'rgs%d_spatial.fit' % n
        pi_img = 'rgs%d_pi.fit' % n
        plot_ps = 'plots/rgs%d_diag_regions.ps' % n

        logger.info("Creating RGS%d diagnostic region plot...", n)
        args = ['evselect',
                'table=%s:EVENTS' % evt,
                'imageset=' + spatial_img,
                'withimageset=yes',
                'xcolumn=M_LAMBDA',
                'ycolumn=XDSP_CORR']
        run_task(args, cwd=self.obs.rgsdir, env=self.env)

        args = ['evselect',
                'table=%s:EVENTS' % evt,
                'imageset=' + pi_img,
                'withimageset=yes',
                'xcolumn=M_LAMBDA',
                'ycolumn=PI',
                'yimagemin=0',
                'yimagemax=3000',
                'expression=' + self._region_expr(n, 'SRC%d_SPATIAL' % self.source_id)]
        run_task(args, cwd=self.obs.rgsdir, env=self.env)

        remove_files(os.path.join(self.obs.rgsdir, plot_ps))
        args = ['rgsimplot',
                'endispset=' + pi_img,
                'spatialset=' + spatial_img,
                'srcidlist=%d' % self.source_id,
                'srclistset=' + os.path.basename(self.src[n]),
                'plotfile=' + plot_ps,
                'device=/CPS']
        run_task(args, cwd=self.obs.rgsdir, env=self.env)
        require_output(os.path.join(self.obs.rgsdir, plot_ps), 'rgsimplot')

        convert_plot(plot_ps, 'plots/rgs%d_diag_regions.png' % n, density=300, cwd=self.obs.rgsdir,
                     remove=True)

    def source_lightcurve(self, n, timebin):
        lcfile = 'rgs%d_source_lc_raw.fits' % n
        args = ['evselect',
                'table=' + os.path.basename(self.evt[n]),
                'withrateset=yes',
                'rateset=' + lcfile,
                'maketimecolumn=yes',
                'timebinsize=%g' % timebin,
                'makeratecolumn=yes',
                'expression=' + self._region_expr(n, 'SRC%d_SPATIAL' % self.source_id)]
        run_task(args, cwd=self.obs.rgsdir, env=self.env)
        require_output(os.path.join(self.obs.rgsdir, lcfile), 'evselect')

        return self._plot_lc(lcfile, 'rgs%d_source_lc_raw' % n)

    def corrected_lightcurve(self, timebin):
        #
        # background subtracted source lightcurve combining both RGS units
        #
        units = self.units()
        lcfile = 'rgs_source_lc_corrected.fits'

        logger.info("Creating combined RGS source lightcurve: %s", lcfile)
        args = ['rgslccorr',
                'evlist=' + ' '.join(self.evt[n] for n in units),
                'srclist=' + ' '.join(self.src[n] for n in units),
                'timebinsize=%g' % timebin,
                'orders=' + ' '.join(self.orders),
                'sourceid=%d' % self.source_id,
                'outputsrcfilename=' + lcfile]
        run_task(args, cwd=self.obs.rgsdir, env=self.env)
        require_output(os.path.join(self.obs.rgsdir, lcfile), 'rgslccorr')

        return self._plot_lc(lcfile, 'rgs_source_lc_corrected')

    def background_lightcurve(self, n):
        #
        # CCD9 background rate, the flare indicator for RGS
        #
        lcfile = 'rgs%d_bkg_lc.fits' % n
        args = ['evselect',
                'table=' + os.path.basename(self.evt[n]),
                'withrateset=yes',
                'rateset=' + lcfile,
                'maketimecolumn=yes',
                'timebinsize=100',
                'makeratecolumn=yes',
                'expression=' + join_expr('(CCDNR==9)', '(%s)' % self._region_expr(n, 'BACKGROUND'))]
        run_task(args, cwd=self.obs.rgsdir, env=self.env)
        lcpath = require_output(os.path.join(self.obs.rgsdir, lcfile), 'evselect')

        self._plot_lc(lcfile, 'rgs%d_bkg_lc' % n)
        logger.info("RGS%d background lightcurve: %s", n, format_summary(rate_summary(lcpath)))
        return lcpath

    def make_flare_gti(self, n, rate_threshold):
        lcfile = self.obs.rgsdir + '/rgs%d_bkg_lc.fits' % n
        gtifile = self.obs.rgsdir + '/gti_rgs%d.fits' % n
        if not os.path.exists(lcfile):
            logger.warning("No background lightcurve for RGS%d, not filtering it", n)
            return None

        logger.info("Creating RGS%d flare GTI (RATE<=%g)", n, rate_threshold)
        args = ['tabgtigen',
                'table=' + lcfile,
                'expression=RATE<=%s' % rate_threshold,
                'gtiset=' + gtifile]
        run_task(args, env=self.env)
        require_output(gtifile, 'tabgtigen')
        logger.info("RGS%d good time after flare filtering: %.1f s", n, GTI.read(gtifile).on_time())
        return gtifile

    def rerun_filtered(self, gtis):
        #
        # rgsproc from the filter stage with the flare GTIs, in rgs/filt
        #
        workdir = self.obs.rgsfiltdir
        self.obs.makedirs(workdir)

        self._copy_inputs(workdir, ('*SRCLI*.FIT', '*merged*.FIT'))
        for gti in gtis:
            shutil.copy(gti, workdir)

        logger.info("Re-running rgsproc with flare GTIs in %s", workdir)
        args = ['rgsproc',
                'entrystage=3:filter',
                'finalstage=5:fluxing',
                'orders=' + ' '.join(self.orders),
                'auxgtitables=' + ' '.join(os.path.basename(g) for g in gtis)]
        run_task(args, cwd=workdir, env=self.env, logfile='rgsproc_filter.log')
        return workdir

    def reduce(self, diagnostic_plots=True, lc_timebin=100, filter_rgs1=True, filter_rgs2=True,
               rate_threshold=0.12):
        filtering = filter_rgs1 or filter_rgs2
        self.find_files(require_merged=filtering)
        self.obs.makedirs(self.obs.rgsplotdir)

        units = self.units()

        if diagnostic_plots:
            for n in units:
                self.diagnostic_plots(n)

        logger.info("Creating RGS source lightcurves (%gs bins)...", lc_timebin)
        for n in units:
            self.source_lightcurve(n, lc_timebin)
        self.corrected_lightcurve(lc_timebin)

        logger.info("Creating RGS background lightcurves...")
        for n in units:
            self.background_lightcurve(n)

        if not filtering:
            logger.info("Skipping flare filtering (filter_rgs1 = filter_rgs2 = no)")
            return None

        gtis = []
        for n, wanted in ((1, filter_rgs1), (2, filter_rgs2)):
            if wanted:
                gti = self.make_flare_gti(n, rate_threshold)
                if gti is not None:
                    gtis.append(gti)

        if len(gtis) == 0:
            logger.warning("No flare GTIs could be made, skipping the filtered rgsproc run")
            return None

        return self.rerun_filtered(gtis)

    #-- Re-runs with extra GTIs ------------------------------------------------

    def _copy_inputs(self, workdir, patterns=RGS_INPUT_PATTERNS):
        copied = []
        for pattern in patterns:
            for f in sorted(glob.glob(os.path.join(self.obs.rgsdir, pattern))):
                shutil.copy(f, workdir)
                copied.append(os.path.join(workdir, os.path.basename(f)))
        return copied

    def _run_rgsproc(self, workdir, gtis, logfile):
        args = ['rgsproc',
                'orders=' + ' '.join(self.orders),
                'bkgcorrect=yes',
                'auxgtitables=' + ' '.join(gtis),
                'entrystage=3:filter',
                'finalstage=5:fluxing']
        run_task(args, cwd=workdir, env=self.env, logfile=logfile)

    def product_names(self, n, order, suffix):
        return {'src': 'rgs%d_src_o%s_%s.fits' % (n, order, suffix),
                'bkg': 'rgs%d_bkg_o%s_%s.fits' % (n, order, suffix),
                'rmf': 'rgs%d_o%s_%s.rmf' % (n, order, suffix),
                'grp': 'rgs%d_src_o%s_%s_grp.pha' % (n, order, suffix)}

    def rename_products(self, workdir, suffix):
        #
        # give the rgsproc spectra and response matrices readable names and
        # point the source spectra at the renamed background and response
        #
        renamed = []
        for n in RGS_UNITS:
            for order in self.orders:
                names = self.product_names(n, order, suffix)
                patterns = (('src', '*R%dS*SRSPEC%s*.FIT' % (n, order)),
                            ('bkg', '*R%dS*BGSPEC%s*.FIT' % (n, order)),
                            ('rmf', '*R%dS*RSPMAT%s*.FIT' % (n, order)))

                for key, pattern in patterns:
                    f = find_first(workdir, pattern)
                    if f is not None:
                        shutil.move(f, os.path.join(workdir, names[key]))

                src = os.path.join(workdir, names['src'])
                if os.path.exists(src):
                    bkg = os.path.join(workdir, names['bkg'])
                    rmf = os.path.join(workdir, names['rmf'])
                    link_spectra(src, bkg=bkg if os.path.exists(bkg) else None,
                                 rmf=rmf if os.path.exists(rmf) else None)
                    renamed.append(src)

        if len(renamed) == 0:
            logger.warning("rgsproc produced no spectra in %s", workdir)
        return renamed

    def group_products(self, workdir, suffix, group_type='opt', min_counts=20):
        grouped = []
        for n in RGS_UNITS:
            for order in self.orders:
                names = self.product_names(n, order, suffix)
                src = os.path.join(workdir, names['src'])
                if not os.path.exists(src):
                    continue

                bkg = os.path.join(workdir, names['bkg'])
                rmf = os.path.join(workdir, names['rmf'])
                out = os.path.join(workdir, names['grp'])

                logger.info("  Grouping: %s -> %s", names['src'], names['grp'])
                group_spec(out, src,
                           bkgfile=bkg if os.path.exists(bkg) else None,
                           rmffile=rmf if os.path.exists(rmf) else None,
                           grptype=group_type,
                           grpscale=min_counts if group_type != 'opt' else None,
                           env=self.env)
                grouped.append(out)
        return grouped

    def _extract_with_gtis(self, workdir, suffix, gtis, group_type, min_counts, time_expr=None):
        self.obs.makedirs(workdir)
        copied = self._copy_inputs(workdir)
        try:
            gtis = list(gtis)
            if time_expr is not None:
                for n in RGS_UNITS:
                    evt = find_first(workdir, '*R%dS*EVENLI*.FIT' % n)
                    if evt is None:
                        continue
                    gti = 'gti_time_r%d.fits' % n
                    args = ['tabgtigen',
                            'table=' + os.path.basename(evt),
                            'expression=' + time_expr,
                            'gtiset=' + gti]
                    run_task(args, cwd=workdir, env=self.env)
                    require_output(os.path.join(workdir, gti), 'tabgtigen')
                    gtis.append(gti)

            logger.info("Running rgsproc for %s...", suffix)
            self._run_rgsproc(workdir, gtis, 'rgsproc_%s.log' % suffix)

            self.rename_products(workdir, suffix)
            grouped = self.group_products(workdir, suffix, group_type, min_counts)
        finally:
            remove_files(*copied)

        return grouped

    #-- Stage 3b: time intervals ------------------------------------------------

    def extract_time_spectra(self, intervals, group_type='opt', min_counts=20):
        check_group_type(group_type, min_counts)
        self.find_files()

        if len(intervals) == 0:
            logger.warning("No RGS time intervals defined, nothing to extract")
            return {}

        flare_gtis = self.flare_gtis()
        if len(flare_gtis) == 0:
            logger.warning("No RGS flare GTIs found, spectra will not be flare filtered")

        products = {}
        for name, expr in intervals:
            logger.info("Processing RGS interval: %s %s", name, expr)
            workdir = os.path.join(self.obs.rgstimedir, name)
            products[name] = self._extract_with_gtis(workdir, name, flare_gtis, group_type, min_counts,
                                                     time_expr=expr)
        return products

    #-- Stage 4b: flux states ------------------------------------------------

    def extract_flux_resolved(self, pn_clean_evt, time_filter, threshold, src_rawx='RAWX in [27:47]',
                              timebin=1.0, group_type='opt', min_counts=20):
        #
        # low and high flux states defined on the EPIC-pn count rate
        #
        check_group_type(group_type, min_counts)
        self.find_files()
        if not os.path.exists(pn_clean_evt):
            raise MissingInputError("PN clean event file not found: %s" % pn_clean_evt)

        self.obs.makedirs(self.obs.rgsfluxdir)
        ref_lc = self.obs.rgsfluxdir + '/temp_pn_ref_rate.fits'

        logger.info("Creating PN reference lightcurve (%gs bins)...", timebin)
        args = ['evselect',
                'table=' + pn_clean_evt,
                'withrateset=yes',
                'rateset=' + ref_lc,
                'timebinsize=%g' % timebin,
                'maketimecolumn=yes',
                'makeratecolumn=yes',
                'expression=' + join_expr(REF_LC_EXPR, src_rawx),
                'energycolumn=PI']
        run_task(args, env=self.env)
        require_output(ref_lc, 'evselect')

        gti_low = self.obs.rgsfluxdir + '/gti_low.fits'
        gti_high = self.obs.rgsfluxdir + '/gti_high.fits'

        products = {}
        try:
            if threshold == 'mean':
                window_gti = self.obs.rgsfluxdir + '/gti_window.fits'
                args = ['tabgtigen',
                        'table=' + ref_lc,
                        'expression=' + time_filter,
                        'gtiset=' + window_gti]
                run_task(args, env=self.env)
                require_output(window_gti, 'tabgtigen')
                try:
                    threshold = mean_rate(ref_lc, window_gti)
                except ValueError:
                    raise ConfigError("Time filter %s selects no lightcurve bins" % time_filter)
                finally:
                    remove_files(window_gti)
                logger.info("Mean PN count rate in %s: %.4g counts/s", time_filter, threshold)

            states = [('LowFlux', gti_low, '%s && (RATE < %s)' % (time_filter, threshold)),
                      ('HighFlux', gti_high, '%s && (RATE >= %s)' % (time_filter, threshold))]

            for state, gtifile, expr in states:
                remove_files(gtifile)
                args = ['tabgtigen',
                        'table=' + ref_lc,
                        'expression=' + expr,
                        'gtiset=' + gtifile]
                run_task(args, env=self.env, check=False)

            flare_gtis = self.flare_gtis()
            for state, gtifile, expr in states:
                if not os.path.exists(gtifile) or GTI.read(gtifile).on_time() <= 0:
                    logger.warning("No good time for %s (%s). Skipping.", state, os.path.basename(gtifile))
                    continue

                logger.info("Processing flux state: %s", state)
                workdir = os.path.join(self.obs.rgsfluxdir, state)
                products[state] = self._extract_with_gtis(workdir, state, flare_gtis + [gtifile],
                                                          group_type, min_counts)
        finally:
            remove_files(ref_lc, gti_low, gti_high)

        return products
