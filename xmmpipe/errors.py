"""
Exceptions raised by the reduction stages
"""


class PipelineError(RuntimeError):
    pass


class ConfigError(PipelineError):
    pass


class MissingInputError(PipelineError):
    #
    # a product that an earlier stage should have created is not there
    #
    pass


class MissingProductError(PipelineError):
    #
    # a task exited cleanly but did not write the file it should have
    #
    def __init__(self, task, path):
        self.task = task
        self.path = path
        PipelineError.__init__(self, "%s did not produce %s" % (task, path))


class TaskError(PipelineError):
    def __init__(self, task, returncode, logfile=None):
        self.task = task
        self.returncode = returncode
        self.logfile = logfile

        msg = "%s failed with exit status %d" % (task, returncode)
        if logfile is not None:
            msg += " (see %s)" % logfile
        PipelineError.__init__(self, msg)
