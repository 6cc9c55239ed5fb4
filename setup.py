import setuptools
from setuptools import setup

install_deps = [
    'numpy>=1.20.0',
    'scipy',
    'scikit-learn',
    'tqdm',
    'torch>=1.6',
    'numba',
    'psutil',
    'h5py',
]

test_deps = [
    'pytest',
]

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="bpsort",
    version="0.1.0",
    license="BSD",
    description="binary pursuit spike sorting",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=['bpsort', 'bpsort.*']),
    python_requires='>=3.8',
    install_requires=install_deps,
    extras_require={
        'test': test_deps,
    },
    include_package_data=True,
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
