"""
Running SAS and HEASOFT tasks

Every task is invoked through run_task() so the exit status is always
checked and the command line always reaches the log.
"""
import os
import glob
import logging
import subprocess

from .errors import TaskError, MissingProductError

logger = logging.getLogger(__name__)


def run_task(args, cwd=None, env=None, logfile=None, check=True):
    #
    # run an external task with stdin closed so that plotting tasks never
    # sit waiting for input, optionally capturing its output in logfile
    #
    logger.debug("$ %s%s", ' '.join(args), " (in %s)" % cwd if cwd is not None else '')

    if logfile is not None:
        logpath = logfile if cwd is None else os.path.join(cwd, logfile)
        with open(logpath, 'w') as log:
            proc = subprocess.Popen(args, cwd=cwd, env=env, stdin=subprocess.DEVNULL,
                                    stdout=log, stderr=subprocess.STDOUT)
            returncode = proc.wait()
    else:
        proc = subprocess.Popen(args, cwd=cwd, env=env, stdin=subprocess.DEVNULL)
        returncode = proc.wait()

    if returncode != 0:
        if check:
            raise TaskError(args[0], returncode, logfile)
        logger.warning("%s exited with status %d", args[0], returncode)

    return returncode


def require_output(path, task):
    if not os.path.exists(path):
        raise MissingProductError(task, path)
    return path


def find_first(directory, pattern, recursive=False):
    #
    # first match (in sorted order) of a filename pattern in a directory,
    # or None if there is nothing there
    #
    if recursive:
        matches = glob.glob(os.path.join(directory, '**', pattern), recursive=True)
    else:
        matches = glob.glob(os.path.join(directory, pattern))
    matches = sorted(m for m in matches if os.path.isfile(m))
    return matches[0] if len(matches) > 0 else None


def sas_environment(odf=None, ccf=None, base=None):
    #
    # copy of the environment with the SAS variables pointing at this observation
    #
    envvars = dict(os.environ if base is None else base)
    if odf is not None:
        envvars['SAS_ODF'] = os.path.abspath(odf)
    if ccf is not None:
        envvars['SAS_CCF'] = os.path.abspath(ccf)
    return envvars


def join_expr(*terms):
    #
    # SAS filter expression from the non-empty terms
    #
    return ' && '.join(t for t in terms if t)


def remove_files(*files):
    for f in files:
        if f is not None and os.path.exists(f):
            os.remove(f)
