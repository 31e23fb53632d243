"""
Diagnostic plots

Plots are drawn by the HEASOFT/SAS plotting tasks and rasterised with
ImageMagick so they can be looked at between runs.
"""
import os

from .sas import run_task, remove_files


def plot_lightcurve(lcfile, plotfile, cwd=None, env=None, driver='/PS'):
    #
    # TIME vs RATE plot of a rate set with fplot
    #
    args = ['fplot',
            '%s[RATE]' % lcfile,
            'xparm=TIME',
            'yparm=RATE',
            'mode=h',
            'device=%s%s' % (plotfile, driver)]
    run_task(args, cwd=cwd, env=env)
    return plotfile


def convert_plot(plotfile, outfile, page=0, density=None, cwd=None, remove=False):
    #
    # rasterise one page of a PS/PDF plot
    #
    args = ['convert']
    if density is not None:
        args += ['-density', str(density)]
    args += ['%s[%d]' % (plotfile, page), outfile]
    run_task(args, cwd=cwd)

    if remove:
        remove_files(plotfile if cwd is None else os.path.join(cwd, plotfile))
    return outfile
