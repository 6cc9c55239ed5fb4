import importlib.metadata
try:
    __version__ = importlib.metadata.version('bpsort')
except importlib.metadata.PackageNotFoundError:
    # package is not installed
    __version__ = 'unknown'

from .run_sorter import BPSorter
from .parameters import DEFAULT_SETTINGS
from .io import FilteredRecording, load_probe, load_results
