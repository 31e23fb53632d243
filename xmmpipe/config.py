"""
Pipeline configuration

The settings that used to be edited at the top of each reduction script
live in an INI file. Edit it after inspecting the diagnostic plots and
re-run the stage.
"""
import os
from collections import OrderedDict
from configparser import ConfigParser

from .errors import ConfigError

DEFAULTS = OrderedDict([
    ('observation', OrderedDict([
        ('project_root', ''),
        ('obsid', ''),
        ('odf_dir', ''),
    ])),
    ('background', OrderedDict([
        ('apply_filter', 'no'),
        ('rate_threshold', '0.4'),
        ('timebin', '200'),
    ])),
    ('pn', OrderedDict([
        ('src_rawx_filter', 'RAWX in [27:47]'),
        ('bkg_rawx_filter', 'RAWX in [3:5]'),
        ('piled_up', 'yes'),
        ('excision_filter', '!(RAWX in [36:38])'),
        ('run_excision_test', 'yes'),
        ('min_counts', '25'),
    ])),
    ('time_intervals', OrderedDict()),
    ('flux_resolved', OrderedDict([
        ('label', 'Dipping'),
        ('time_filter', ''),
        ('threshold', ''),
        ('timebin', '1.0'),
        ('min_counts', '10'),
    ])),
    ('rgs', OrderedDict([
        ('diagnostic_plots', 'yes'),
        ('lc_timebin', '100'),
        ('source_id', '1'),
        ('filter_rgs1', 'yes'),
        ('filter_rgs2', 'yes'),
        ('rate_threshold', '0.12'),
        ('orders', '1 2'),
        ('group_type', 'opt'),
        ('group_min_counts', '20'),
    ])),
    ('rgs_time_intervals', OrderedDict()),
    ('rgs_flux_resolved', OrderedDict([
        ('time_filter', ''),
        ('threshold', ''),
        ('timebin', '1.0'),
    ])),
])

EXAMPLE = """\
# xmmpipe configuration
#
# Run a stage, look at the plots it makes, edit the matching section
# below and run the stage again.

[observation]
# data/<obsid> under project_root holds the ODFs; products/<obsid> the output
project_root = .
obsid = 0123456789
# odf_dir = /path/to/data/0123456789

[background]
# set apply_filter = yes once the lightcurve shows flares
apply_filter = no
rate_threshold = 0.4
timebin = 200

[pn]
src_rawx_filter = RAWX in [27:47]
bkg_rawx_filter = RAWX in [3:5]
piled_up = yes
excision_filter = !(RAWX in [36:38])
run_excision_test = yes
min_counts = 25

[time_intervals]
# output suffix = SAS time expression (MET seconds)
Dipping = (TIME IN [701596384.2:701625304.2])
Eclipse = (TIME IN [701628654.2:701632874.2])

[flux_resolved]
label = Dipping
time_filter = (TIME IN [701596278.5:701625198.5])
# counts/s, or "mean" for the mean rate inside time_filter
threshold = mean
timebin = 1.0
min_counts = 10

[rgs]
diagnostic_plots = yes
lc_timebin = 100
source_id = 1
filter_rgs1 = yes
filter_rgs2 = yes
rate_threshold = 0.12
orders = 1 2
# opt, optmin or min
group_type = opt
group_min_counts = 20

[rgs_time_intervals]
Dipping = (TIME IN [701596278.5:701625198.5])

[rgs_flux_resolved]
time_filter = (TIME IN [701596278.5:701625198.5])
threshold = 4.06
timebin = 1.0
"""


def load_config(filename=None):
    #
    # read the configuration on top of the defaults
    # option names keep their case since interval names become file suffixes
    #
    config = ConfigParser(interpolation=None)
    config.optionxform = str
    config.read_dict(DEFAULTS)

    if filename is not None:
        if not os.path.exists(filename):
            raise ConfigError("Configuration file %s not found" % filename)
        config.read(filename)

    return config


def intervals(config, section):
    #
    # ordered (name, expression) pairs from an interval section
    #
    if not config.has_section(section):
        return []

    pairs = []
    for name, expr in config.items(section):
        if expr.strip() == '':
            raise ConfigError("Interval %s in [%s] has no time expression" % (name, section))
        if any(c in name for c in ' /'):
            raise ConfigError("Interval name '%s' cannot be used as a file suffix" % name)
        pairs.append((name, expr.strip()))
    return pairs


def get_threshold(config, section):
    #
    # a count rate threshold, or 'mean' to take it from the lightcurve
    #
    value = config.get(section, 'threshold').strip()
    if value == '':
        raise ConfigError("No threshold set in [%s]" % section)
    if value.lower() == 'mean':
        return 'mean'
    try:
        return float(value)
    except ValueError:
        raise ConfigError("Invalid threshold '%s' in [%s]" % (value, section))


def require(config, section, option):
    value = config.get(section, option).strip()
    if value == '':
        raise ConfigError("%s must be set in [%s]" % (option, section))
    return value


def write_example(filename):
    if os.path.exists(filename):
        raise ConfigError("%s already exists" % filename)
    with open(filename, 'w') as f:
        f.write(EXAMPLE)
