import pytest

from xmmpipe import config as cfg
from xmmpipe.errors import ConfigError


def write(tmp_path, text):
    path = tmp_path / 'xmmpipe.ini'
    path.write_text(text)
    return str(path)


def test_defaults():
    config = cfg.load_config()

    assert config.getboolean('background', 'apply_filter') is False
    assert config.getfloat('background', 'rate_threshold') == 0.4
    assert config.get('pn', 'src_rawx_filter') == 'RAWX in [27:47]'
    assert config.get('pn', 'excision_filter') == '!(RAWX in [36:38])'
    assert config.getint('pn', 'min_counts') == 25
    assert config.getint('flux_resolved', 'min_counts') == 10
    assert config.getfloat('rgs', 'rate_threshold') == 0.12
    assert config.get('rgs', 'orders') == '1 2'
    assert cfg.intervals(config, 'time_intervals') == []


def test_missing_file():
    with pytest.raises(ConfigError):
        cfg.load_config('/nonexistent/xmmpipe.ini')


def test_intervals_keep_order_and_case(tmp_path):
    config = cfg.load_config(write(tmp_path, """
[time_intervals]
Eclipse = (TIME IN [2:3])
Dipping = (TIME IN [0:1])
"""))
    assert cfg.intervals(config, 'time_intervals') == [('Eclipse', '(TIME IN [2:3])'),
                                                       ('Dipping', '(TIME IN [0:1])')]


def test_intervals_reject_blank_expression(tmp_path):
    config = cfg.load_config(write(tmp_path, "[time_intervals]\nDipping =\n"))
    with pytest.raises(ConfigError):
        cfg.intervals(config, 'time_intervals')


def test_intervals_missing_section():
    config = cfg.load_config()
    config.remove_section('time_intervals')
    assert cfg.intervals(config, 'time_intervals') == []


def test_percent_in_expression_is_not_interpolated(tmp_path):
    config = cfg.load_config(write(tmp_path, "[pn]\nsrc_rawx_filter = RAWX in [27:47] %% x\n"))
    assert config.get('pn', 'src_rawx_filter') == 'RAWX in [27:47] %% x'


def test_threshold(tmp_path):
    config = cfg.load_config()
    with pytest.raises(ConfigError):
        cfg.get_threshold(config, 'flux_resolved')

    config.set('flux_resolved', 'threshold', '4.06')
    assert cfg.get_threshold(config, 'flux_resolved') == 4.06

    config.set('flux_resolved', 'threshold', 'Mean')
    assert cfg.get_threshold(config, 'flux_resolved') == 'mean'

    config.set('flux_resolved', 'threshold', 'high')
    with pytest.raises(ConfigError):
        cfg.get_threshold(config, 'flux_resolved')


def test_require():
    config = cfg.load_config()
    with pytest.raises(ConfigError):
        cfg.require(config, 'flux_resolved', 'time_filter')
    assert cfg.require(config, 'flux_resolved', 'label') == 'Dipping'


def test_example_config_round_trip(tmp_path):
    path = str(tmp_path / 'example.ini')
    cfg.write_example(path)
    config = cfg.load_config(path)

    assert config.get('observation', 'obsid') == '0123456789'
    assert [name for name, expr in cfg.intervals(config, 'time_intervals')] == ['Dipping', 'Eclipse']
    assert cfg.get_threshold(config, 'flux_resolved') == 'mean'
    assert cfg.get_threshold(config, 'rgs_flux_resolved') == 4.06

    with pytest.raises(ConfigError):
        cfg.write_example(path)
