"""
xmmpipe command line

One sub-command per reduction stage. Each stage reads the settings it needs
from the configuration file, runs, and says what to look at before the next
stage.
"""
import sys
import logging
import argparse

from . import config as cfg
from .epic import EPICPipeline
from .errors import PipelineError
from .observation import Observation
from .rgs import RGSPipeline

logger = logging.getLogger('xmmpipe')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(verbose=False, log_file=None):
    level = logging.DEBUG if verbose else logging.INFO

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))

    logger.setLevel(level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
        logger.addHandler(h)

    return logger


def guidance(*lines):
    logger.info("-" * 66)
    for line in lines:
        logger.info(line)
    logger.info("-" * 66)


#-- Building the pipelines from the configuration ------------------------------

def make_observation(config, environ=None):
    return Observation(project_root=config.get('observation', 'project_root') or None,
                       obsid=config.get('observation', 'obsid') or None,
                       odf_dir=config.get('observation', 'odf_dir') or None,
                       environ=environ)


def make_epic(obs, config):
    return EPICPipeline(obs,
                        src_rawx=cfg.require(config, 'pn', 'src_rawx_filter'),
                        bkg_rawx=cfg.require(config, 'pn', 'bkg_rawx_filter'),
                        excision=config.get('pn', 'excision_filter').strip(),
                        piled_up=config.getboolean('pn', 'piled_up'))


def make_rgs(obs, config):
    return RGSPipeline(obs,
                       orders=config.get('rgs', 'orders'),
                       source_id=config.getint('rgs', 'source_id'))


#-- Stages -----------------------------------------------------------------------

def cmd_setup(args, config, environ=None):
    obs = make_observation(config, environ)
    obs.setup_and_reprocess(pn=not args.no_pn, rgs=not args.no_rgs)
    guidance("Setup and reprocessing complete for ObsID %s." % obs.obsid,
             "Check the log files in %s for any errors or warnings." % obs.proddir)


def cmd_filter_bkg(args, config, environ=None):
    obs = make_observation(config, environ)
    epic = make_epic(obs, config)
    apply_filter = config.getboolean('background', 'apply_filter')
    epic.filter_background(apply_filter=apply_filter,
                           rate_threshold=config.getfloat('background', 'rate_threshold'),
                           timebin=config.getfloat('background', 'timebin'))
    if apply_filter:
        guidance("Clean event file written: %s" % obs.clean_evl,
                 "Next: xmmpipe check-pileup")
    else:
        guidance("ACTION REQUIRED: Inspect %s/pn_bkg_lc.jpg" % obs.pndir,
                 "--> Set apply_filter and rate_threshold in [background] and re-run. <--")


def cmd_check_pileup(args, config, environ=None):
    obs = make_observation(config, environ)
    epic = make_epic(obs, config)
    run_excision_test = config.getboolean('pn', 'run_excision_test')
    epic.check_pileup(run_excision_test=run_excision_test)

    lines = ["ACTION REQUIRED: Inspect your plot(s) in %s" % obs.pileupdir,
             "",
             "1. Look at 'epatplot_FULL.jpg' to confirm pile-up."]
    if run_excision_test:
        lines += ["2. Look at 'epatplot_EXCISED.jpg' to check your fix.",
                  "   -> If it is NOT flat, adjust excision_filter in [pn] and re-run.",
                  "   -> If it IS flat, pile-up is removed."]
    else:
        lines += ["2. To test an excision, edit [pn] in the configuration:",
                  "   -> Set run_excision_test = yes",
                  "   -> Set excision_filter (e.g. !(RAWX in [36:38]))"]
    guidance(*lines)


def cmd_extract_spectrum(args, config, environ=None):
    obs = make_observation(config, environ)
    epic = make_epic(obs, config)
    files = epic.extract_spectrum(min_counts=config.getint('pn', 'min_counts'))
    guidance("Spectral extraction complete for ObsID %s." % obs.obsid,
             "Final grouped spectrum: %s" % files.grouped,
             "Background spectrum:    %s" % files.bkg,
             "Response matrix (RMF):  %s" % files.rmf,
             "Ancillary file (ARF):   %s" % files.arf)


def cmd_time_spectra(args, config, environ=None):
    obs = make_observation(config, environ)
    epic = make_epic(obs, config)
    products = epic.extract_time_spectra(cfg.intervals(config, 'time_intervals'),
                                         min_counts=config.getint('pn', 'min_counts'))
    guidance("Time-resolved extraction complete: %d interval(s)." % len(products),
             "Output in: %s" % obs.specdir)


def cmd_flux_spectra(args, config, environ=None):
    obs = make_observation(config, environ)
    epic = make_epic(obs, config)
    products = epic.extract_flux_resolved(cfg.require(config, 'flux_resolved', 'time_filter'),
                                          cfg.get_threshold(config, 'flux_resolved'),
                                          label=cfg.require(config, 'flux_resolved', 'label'),
                                          timebin=config.getfloat('flux_resolved', 'timebin'),
                                          min_counts=config.getint('flux_resolved', 'min_counts'))
    guidance("Flux-resolved extraction complete: %d state(s)." % len(products),
             "Output in: %s" % obs.fluxdir)


def cmd_rgs_reduce(args, config, environ=None):
    obs = make_observation(config, environ)
    rgs = make_rgs(obs, config)
    filtdir = rgs.reduce(diagnostic_plots=config.getboolean('rgs', 'diagnostic_plots'),
                         lc_timebin=config.getfloat('rgs', 'lc_timebin'),
                         filter_rgs1=config.getboolean('rgs', 'filter_rgs1'),
                         filter_rgs2=config.getboolean('rgs', 'filter_rgs2'),
                         rate_threshold=config.getfloat('rgs', 'rate_threshold'))

    lines = ["Plots are in %s" % obs.rgsplotdir]
    if filtdir is not None:
        lines += ["Filtered rgsproc products are in %s" % filtdir,
                  "Check %s/rgsproc_filter.log for details of the rgsproc re-run." % filtdir]
    else:
        lines += ["--> Inspect plots, set filter_rgs1/filter_rgs2 in [rgs], and re-run. <--"]
    guidance(*lines)


def cmd_rgs_time_spectra(args, config, environ=None):
    obs = make_observation(config, environ)
    rgs = make_rgs(obs, config)
    products = rgs.extract_time_spectra(cfg.intervals(config, 'rgs_time_intervals'),
                                        group_type=config.get('rgs', 'group_type'),
                                        min_counts=config.getint('rgs', 'group_min_counts'))
    guidance("RGS time-resolved extraction complete: %d interval(s)." % len(products),
             "Output in: %s" % obs.rgstimedir)


def cmd_rgs_flux_spectra(args, config, environ=None):
    obs = make_observation(config, environ)
    rgs = make_rgs(obs, config)
    products = rgs.extract_flux_resolved(obs.clean_evl,
                                         cfg.require(config, 'rgs_flux_resolved', 'time_filter'),
                                         cfg.get_threshold(config, 'rgs_flux_resolved'),
                                         src_rawx=cfg.require(config, 'pn', 'src_rawx_filter'),
                                         timebin=config.getfloat('rgs_flux_resolved', 'timebin'),
                                         group_type=config.get('rgs', 'group_type'),
                                         min_counts=config.getint('rgs', 'group_min_counts'))
    guidance("RGS flux-resolved extraction complete: %d state(s)." % len(products),
             "Output in: %s" % obs.rgsfluxdir)


def cmd_init_config(args, config, environ=None):
    cfg.write_example(args.output)
    logger.info("Wrote example configuration to %s", args.output)


COMMANDS = [
    ('setup', cmd_setup, "Build the CIF, ingest the ODFs and run epproc/rgsproc"),
    ('filter-bkg', cmd_filter_bkg, "Background lightcurve and flare-filtered clean event file"),
    ('rgs-reduce', cmd_rgs_reduce, "RGS diagnostic plots, lightcurves and flare filtering"),
    ('check-pileup', cmd_check_pileup, "epatplot pile-up diagnostics"),
    ('rgs-time-spectra', cmd_rgs_time_spectra, "RGS spectra for each time interval"),
    ('extract-spectrum', cmd_extract_spectrum, "EPIC-pn source and background spectra with responses"),
    ('rgs-flux-spectra', cmd_rgs_flux_spectra, "RGS spectra for low and high EPIC-pn flux states"),
    ('time-spectra', cmd_time_spectra, "EPIC-pn spectra for each time interval"),
    ('flux-spectra', cmd_flux_spectra, "EPIC-pn spectra for low and high flux states"),
    ('init-config', cmd_init_config, "Write an example configuration file"),
]


def build_parser():
    parser = argparse.ArgumentParser(prog='xmmpipe',
                                     description='XMM-Newton EPIC-pn timing mode and RGS reduction stages')
    parser.add_argument('-c', '--config', default=None, help='configuration file (INI)')
    parser.add_argument('-v', '--verbose', action='store_true', help='log the task command lines')
    parser.add_argument('--log-file', default=None, help='also write the log to this file')

    subparsers = parser.add_subparsers(dest='command', metavar='command')
    subparsers.required = True

    for name, func, helptext in COMMANDS:
        sub = subparsers.add_parser(name, help=helptext)
        sub.set_defaults(func=func)
        if name == 'setup':
            sub.add_argument('--no-pn', action='store_true', help='skip epproc')
            sub.add_argument('--no-rgs', action='store_true', help='skip rgsproc')
        elif name == 'init-config':
            sub.add_argument('output', nargs='?', default='xmmpipe.ini', help='file to write')

    return parser


def main(argv=None, environ=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    try:
        if args.command == 'init-config':
            config = None
        else:
            config = cfg.load_config(args.config)
        args.func(args, config, environ)
    except PipelineError as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        logger.error("Invalid configuration value: %s", e)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
