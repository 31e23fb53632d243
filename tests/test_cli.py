import os

import pytest

from xmmpipe.cli import main, build_parser, COMMANDS
from conftest import OBSID


@pytest.fixture
def config_file(tmp_path, obs):
    path = tmp_path / 'xmmpipe.ini'
    path.write_text("""
[observation]
project_root = %s
obsid = %s

[background]
apply_filter = yes
rate_threshold = 0.3

[pn]
piled_up = no

[time_intervals]
Dipping = (TIME IN [0:10])

[flux_resolved]
time_filter = (TIME IN [0:100])
threshold = 4.06

[rgs]
diagnostic_plots = no
filter_rgs2 = no
group_type = min
""" % (tmp_path, OBSID))
    return str(path)


def test_all_stages_have_commands():
    names = [name for name, func, helptext in COMMANDS]
    assert names == ['setup', 'filter-bkg', 'rgs-reduce', 'check-pileup', 'rgs-time-spectra',
                     'extract-spectrum', 'rgs-flux-spectra', 'time-spectra', 'flux-spectra',
                     'init-config']


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_config(tmp_path):
    path = str(tmp_path / 'new.ini')
    assert main(['init-config', path]) == 0
    assert os.path.exists(path)
    assert main(['init-config', path]) == 1


def test_missing_config_file(tmp_path):
    assert main(['-c', str(tmp_path / 'missing.ini'), 'extract-spectrum']) == 1


def test_setup(config_file, environ, fake_sas):
    assert main(['-c', config_file, 'setup', '--no-rgs'], environ=environ) == 0
    assert fake_sas.tasks() == ['cifbuild', 'odfingest', 'epproc']


def test_filter_bkg_uses_config(config_file, pn_obs, environ, fake_sas):
    assert main(['-c', config_file, 'filter-bkg'], environ=environ) == 0
    tabgtigen = fake_sas.task_calls('tabgtigen')[0]
    assert fake_sas.param(tabgtigen, 'expression') == 'RATE<=0.3'


def test_missing_prerequisite_exits_1(config_file, environ, fake_sas):
    assert main(['-c', config_file, 'extract-spectrum'], environ=environ) == 1
    assert fake_sas.calls == []


def test_task_failure_exits_1(config_file, clean_obs, environ, fake_sas):
    fake_sas.failures['specgroup'] = 1
    assert main(['-c', config_file, 'extract-spectrum'], environ=environ) == 1


def test_time_and_flux_spectra(config_file, clean_obs, environ, fake_sas):
    assert main(['-c', config_file, 'time-spectra'], environ=environ) == 0
    assert os.path.exists(os.path.join(clean_obs.specdir, 'pn_source_Dipping_grp.fits'))

    assert main(['-c', config_file, 'flux-spectra'], environ=environ) == 0
    assert os.path.exists(os.path.join(clean_obs.fluxdir, 'pn_Dipping_HighFlux_grp.fits'))
    assert fake_sas.param(fake_sas.task_calls('specgroup')[-1], 'mincounts') == '10'


def test_flux_spectra_needs_threshold(tmp_path, config_file, clean_obs, environ, fake_sas):
    with open(config_file, 'a') as f:
        f.write("\n[rgs_flux_resolved]\ntime_filter = (TIME IN [0:100])\n")
    assert main(['-c', config_file, 'rgs-flux-spectra'], environ=environ) == 1


def test_rgs_commands(config_file, rgs_obs, environ, fake_sas):
    assert main(['-c', config_file, 'rgs-reduce'], environ=environ) == 0
    assert 'rgsimplot' not in fake_sas.tasks()
    assert fake_sas.param(fake_sas.task_calls('rgsproc')[0], 'auxgtitables') == 'gti_rgs1.fits'

    with open(config_file, 'a') as f:
        f.write("\n[rgs_time_intervals]\nDipping = (TIME IN [0:10])\n")
    assert main(['-c', config_file, 'rgs-time-spectra'], environ=environ) == 0
    assert 'grouptype=min' in fake_sas.task_calls('ftgrouppha')[0]
    assert 'groupscale=20' in fake_sas.task_calls('ftgrouppha')[0]


def test_verbose_log_file(tmp_path, config_file, clean_obs, environ, fake_sas):
    log = str(tmp_path / 'run.log')
    assert main(['-c', config_file, '-v', '--log-file', log, 'extract-spectrum'], environ=environ) == 0
    with open(log) as f:
        text = f.read()
    assert '$ evselect' in text
    assert 'Spectral extraction complete' in text
