import logging

import numpy as np
import pytest

from bpsort.run_sorter import BPSorter, setup_logger, close_logger
from bpsort.utils import log_performance, ops_as_string, probe_as_string


def test_log(tmp_path):
    log_dir = tmp_path / 'logging_test'
    log_dir.mkdir(parents=True, exist_ok=True)
    setup_logger(log_dir)
    bp_log = logging.getLogger('bpsort')
    bp_log.info('Logging test')

    # Make sure the log is generated in the correct location.
    assert (log_dir / 'bpsort.log').is_file()

    # Need to be able to overwrite the log file if fit is executed again.
    close_logger()
    setup_logger(log_dir)
    bp_log.info('Logging test 2')
    close_logger()
    with open(log_dir / 'bpsort.log', mode='r') as f:
        log = f.readlines()
    assert len(log) == 1
    assert log[0].rstrip()[-1] == '2'

    # Should be able to delete the log file after logging is finished.
    (log_dir / 'bpsort.log').unlink()


def test_log_loop(tmp_path):
    # Should be able to run in a loop and create log files in the correct
    # location each time, without any file errors.
    for i in range(3):
        log_dir = tmp_path / 'logging_test' / f'loop_{i}'
        log_dir.mkdir(parents=True, exist_ok=True)
        setup_logger(log_dir)
        bp_log = logging.getLogger('bpsort')
        bp_log.info('Logging test')
        close_logger()

    for i in range(3):
        log_dir = tmp_path / 'logging_test' / f'loop_{i}'
        assert (log_dir / 'bpsort.log').is_file()
        with open(log_dir / 'bpsort.log', mode='r') as f:
            log = f.readlines()
        assert len(log) == 1


def test_performance_logging(tmp_path):
    setup_logger(tmp_path)
    bp_log = logging.getLogger('bpsort.test')
    log_performance(bp_log, 'info', 'Resource usage')
    close_logger()
    with open(tmp_path / 'bpsort.log', mode='r') as f:
        text = f.read()
    assert 'Resource usage' in text
    assert 'CPU usage' in text

    text = ops_as_string({'settings': {}, 'probe': {}, 'nskip': 2,
                          'basis': np.zeros((37, 6))})
    assert 'nskip' in text
    assert 'shape=(37, 6)' in text
    assert 'settings' not in text
    text = probe_as_string({'xc': np.zeros(2), 'yc': np.ones(2)})
    assert text.startswith('probe = ')


def test_fit_errors_are_logged(linear_probe, tmp_path):
    settings = {'temp_dir': tmp_path / 'bp', 'debug': True}
    with BPSorter(linear_probe, settings) as bps:
        with pytest.raises(RuntimeError, match='read_data'):
            bps.fit()

        # A store that was never written is not usable.
        bps.state = 'ready'
        with pytest.raises(Exception):
            bps.fit(results_dir=tmp_path / 'results')

    with open(tmp_path / 'results' / 'bpsort.log', mode='r') as f:
        text = f.read()
    assert 'Encountered error in `BPSorter.fit`' in text
    assert len(logging.getLogger('bpsort').handlers) == 0
