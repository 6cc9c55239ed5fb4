import pytest
import numpy as np
import torch

from bpsort.simulation import make_waveform, poisson_train, simulate_recording


@pytest.fixture(scope='session')
def gpu(request):
    return request.config.getoption('--gpu')

@pytest.fixture(scope='session')
def torch_device(gpu):
    if gpu:
        if not torch.cuda.is_available():
            raise ValueError('GPU tests requested, but no CUDA device available.')
        return torch.device('cuda')
    else:
        return torch.device('cpu')


### runslow flag configured according to response from Manu CJ here:
# https://stackoverflow.com/questions/47559524/pytest-how-to-skip-tests-unless-you-declare-an-option-flag
def pytest_addoption(parser):
    parser.addoption(
        "--gpu", action="store_true", default=False, help="use GPU for tests"
    )
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run slow tests"
    )

def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")

def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        # --runslow given in cli: do not skip slow tests
        return
    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)

### End


@pytest.fixture()
def linear_probe():
    """Single column of 8 contacts spaced 20um apart."""
    return {
        'xc': np.zeros(8, dtype=np.float32),
        'yc': np.arange(8, dtype=np.float32) * 20,
        'chanMap': np.arange(8, dtype=np.int32),
        'kcoords': np.zeros(8, dtype=np.float32),
        'n_chan': 8,
    }


@pytest.fixture()
def two_channel_recording():
    """One neuron on two channels in unit white noise, 5 s at 12kHz."""
    fs = 12000
    n = 5 * fs
    samples = (-12, 24)
    rng = np.random.default_rng(42)
    waveform = make_waveform(samples, peak_channel=0, n_channels=2, amplitude=20)
    times = poisson_train(20, n - 100, fs, rng=rng) + 50
    amplitudes = rng.uniform(0.7, 1.5, size=times.size)
    data = simulate_recording([waveform], [times], n, samples, noise_sd=1.,
                              amplitudes=[amplitudes], seed=1)
    return {'data': data, 'fs': fs, 'samples': samples, 'waveform': waveform,
            'times': times, 'amplitudes': amplitudes}
