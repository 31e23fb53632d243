import os
import logging
import astropy.io.fits as pyfits

from .sas import run_task, require_output, join_expr

logger = logging.getLogger(__name__)

# EPIC-pn selection shared by all spectra and the pile-up check
PN_BASE_FILTER = '(FLAG==0)&&(PI in [500:15000])&&(PATTERN<=4)'

PN_SPECCHANNELMAX = 20479

GROUP_TYPES = ('opt', 'optmin', 'min')


class SpectrumFiles(object):
    #
    # file names of one set of spectral products (source, background, responses
    # and grouped spectrum) in a directory
    #

    def __init__(self, directory, source, bkg, rmf, arf, grouped):
        self.directory = directory
        self.source = os.path.join(directory, source)
        self.bkg = os.path.join(directory, bkg)
        self.rmf = os.path.join(directory, rmf)
        self.arf = os.path.join(directory, arf)
        self.grouped = os.path.join(directory, grouped)

    @classmethod
    def standard(cls, directory):
        return cls(directory, 'pn_source_spectrum.fits', 'pn_bkg_spectrum.fits',
                   'pn_rmf.rmf', 'pn_arf.arf', 'pn_source_spectrum_grp.fits')

    @classmethod
    def interval(cls, directory, suffix):
        return cls(directory, 'pn_source_%s.fits' % suffix, 'pn_bkg_%s.fits' % suffix,
                   'pn_rmf_%s.rmf' % suffix, 'pn_arf_%s.arf' % suffix, 'pn_source_%s_grp.fits' % suffix)

    @classmethod
    def flux_state(cls, directory, suffix):
        return cls(directory, 'pn_%s.fits' % suffix, 'pn_bkg_%s.fits' % suffix,
                   'pn_%s.rmf' % suffix, 'pn_%s.arf' % suffix, 'pn_%s_grp.fits' % suffix)

    def products(self):
        return [self.source, self.bkg, self.rmf, self.arf, self.grouped]


def inner_core_filter(excision_filter):
    #
    # the columns removed by an excision filter, e.g. "!(RAWX in [36:38])"
    # becomes "RAWX in [36:38]"
    #
    inner = excision_filter.replace('!', '', 1).replace('(', '', 1).replace(')', '', 1).strip()
    if inner == '':
        raise ValueError("Cannot derive the inner core region from excision filter '%s'" % excision_filter)
    return inner


#-- SAS spectral tasks ---------------------------------------------------------

def evselect_spectrum(evtfile, specfile, expr, env=None, writedss=False):
    args = ['evselect',
            'table=' + evtfile,
            'withspectrumset=yes',
            'spectrumset=' + specfile,
            'energycolumn=PI',
            'spectralbinsize=5',
            'withspecranges=yes',
            'specchannelmin=0',
            'specchannelmax=%d' % PN_SPECCHANNELMAX,
            'expression=' + expr]
    if writedss:
        args += ['writedss=yes']

    run_task(args, env=env)
    return require_output(specfile, 'evselect')


def backscale(specfile, evtfile, env=None):
    args = ['backscale',
            'spectrumset=' + specfile,
            'badpixlocation=' + evtfile]
    run_task(args, env=env)


def rmfgen(specfile, rmffile, env=None):
    args = ['rmfgen',
            'spectrumset=' + specfile,
            'rmfset=' + rmffile]
    run_task(args, env=env)
    return require_output(rmffile, 'rmfgen')


def arfgen(specfile, arffile, rmffile, evtfile, env=None):
    args = ['arfgen',
            'spectrumset=' + specfile,
            'arfset=' + arffile,
            'withrmfset=yes',
            'rmfset=' + rmffile,
            'badpixlocation=' + evtfile,
            'detmaptype=psf']
    run_task(args, env=env)
    return require_output(arffile, 'arfgen')


def addarf(arffiles, weights, outfile, env=None):
    #
    # weighted sum of ARFs; the file and weight lists go in as single arguments
    #
    args = ['addarf',
            ' '.join(arffiles),
            ' '.join('%.1f' % w for w in weights),
            outfile,
            'clobber=yes']
    run_task(args, env=env)
    return require_output(outfile, 'addarf')


def specgroup(files, min_counts, env=None):
    args = ['specgroup',
            'spectrumset=' + files.source,
            'groupedset=' + files.grouped,
            'backgndset=' + files.bkg,
            'rmfset=' + files.rmf,
            'arfset=' + files.arf,
            'mincounts=%d' % min_counts]
    run_task(args, env=env)
    return require_output(files.grouped, 'specgroup')


#-- Complete extraction ------------------------------------------------------

def extract_pn_products(evtfile, files, src_filter, bkg_filter, min_counts, env=None,
                        extra_terms=(), excision=None, tempdir=None, writedss=False):
    #
    # source and background spectra, responses and the grouped spectrum from
    # an EPIC-pn event file
    #
    # with an excision filter the source spectrum excludes the piled-up core
    # and the ARF is the full-region ARF minus the ARF of the core
    #
    src_expr = join_expr(PN_BASE_FILTER, src_filter, excision, *extra_terms)
    bkg_expr = join_expr(PN_BASE_FILTER, bkg_filter, *extra_terms)

    if not os.path.exists(files.directory):
        os.makedirs(files.directory)

    logger.info("Extracting source spectrum: %s", os.path.basename(files.source))
    logger.debug("Source filter: %s", src_expr)
    evselect_spectrum(evtfile, files.source, src_expr, env=env, writedss=writedss)

    logger.info("Extracting background spectrum: %s", os.path.basename(files.bkg))
    evselect_spectrum(evtfile, files.bkg, bkg_expr, env=env, writedss=writedss)

    logger.info("Calculating BACKSCAL keywords...")
    backscale(files.source, evtfile, env=env)
    backscale(files.bkg, evtfile, env=env)

    logger.info("Generating RMF: %s", os.path.basename(files.rmf))
    rmfgen(files.source, files.rmf, env=env)

    if excision:
        pileup_arf(evtfile, files, src_filter, excision, env=env,
                   extra_terms=extra_terms, tempdir=tempdir)
    else:
        logger.info("Generating ARF: %s", os.path.basename(files.arf))
        arfgen(files.source, files.arf, files.rmf, evtfile, env=env)

    logger.info("Grouping spectrum (min %d counts): %s", min_counts, os.path.basename(files.grouped))
    specgroup(files, min_counts, env=env)

    return files


def pileup_arf(evtfile, files, src_filter, excision, env=None, extra_terms=(), tempdir=None):
    #
    # ARF for an annulus: full region ARF minus inner core ARF
    #
    if tempdir is None:
        tempdir = files.directory

    base = os.path.splitext(os.path.basename(files.arf))[0]
    full_spec = os.path.join(tempdir, base + '_full_temp.fits')
    inner_spec = os.path.join(tempdir, base + '_inner_temp.fits')
    full_arf = os.path.join(tempdir, base + '_full_temp.arf')
    inner_arf = os.path.join(tempdir, base + '_inner_temp.arf')
    temp_files = [full_spec, inner_spec, full_arf, inner_arf]

    inner = inner_core_filter(excision)

    logger.info("Generating ARF via subtraction (pile-up), inner core: %s", inner)
    try:
        evselect_spectrum(evtfile, full_spec, join_expr(PN_BASE_FILTER, src_filter, *extra_terms), env=env)
        evselect_spectrum(evtfile, inner_spec, join_expr(PN_BASE_FILTER, inner, *extra_terms), env=env)

        arfgen(full_spec, full_arf, files.rmf, evtfile, env=env)
        arfgen(inner_spec, inner_arf, files.rmf, evtfile, env=env)

        addarf([full_arf, inner_arf], [1.0, -1.0], files.arf, env=env)
    finally:
        for f in temp_files:
            if os.path.exists(f):
                os.remove(f)

    return files.arf


#-- Grouping and header keywords ---------------------------------------------

def check_group_type(grptype, grpscale=None):
    if grptype not in GROUP_TYPES:
        raise ValueError("Unknown grouping type '%s' (use one of %s)" % (grptype, ', '.join(GROUP_TYPES)))
    if grptype in ('optmin', 'min') and grpscale is None:
        raise ValueError("Grouping type '%s' needs a minimum number of counts" % grptype)


def group_spec(grpfile, specfile, bkgfile=None, rmffile=None, grptype='opt', grpscale=None, env=None):
    #
    # group a spectrum with ftgrouppha, running in the spectrum's directory
    #
    check_group_type(grptype, grpscale)

    specdir = os.path.dirname(specfile)

    args = ['ftgrouppha',
            'infile=%s' % os.path.basename(specfile),
            'outfile=%s' % os.path.relpath(grpfile, specdir),
            'grouptype=%s' % grptype]

    if grptype in ('optmin', 'min'):
        args += ['groupscale=%d' % grpscale]

    if rmffile is not None:
        args += ['respfile=%s' % os.path.relpath(rmffile, specdir)]
    if bkgfile is not None:
        args += ['backfile=%s' % os.path.relpath(bkgfile, specdir)]

    args += ['clobber=yes']

    run_task(args, cwd=specdir, env=env)
    return require_output(grpfile, 'ftgrouppha')


def link_spectra(specfile, bkg=None, rmf=None, arf=None):
    #
    # point the BACKFILE/RESPFILE/ANCRFILE keywords at (renamed) products
    #
    specdir = os.path.dirname(specfile)

    with pyfits.open(specfile, mode='update') as specfits:
        if bkg is not None:
            specfits['SPECTRUM'].header['BACKFILE'] = os.path.relpath(bkg, specdir)
        if rmf is not None:
            specfits['SPECTRUM'].header['RESPFILE'] = os.path.relpath(rmf, specdir)
        if arf is not None:
            specfits['SPECTRUM'].header['ANCRFILE'] = os.path.relpath(arf, specdir)
