import sys
from setuptools import setup

if sys.version_info < (3, 8):
    sys.exit("Sorry, Python < 3.8 is not supported")

setup(
    name="abf_sampling",
    packages=[
        "abf_sampling",
        "abf_sampling.processing_tools",
        "abf_sampling.sampling_tools",
        "abf_sampling.interface",
    ],
    version="1.0.0",
    license="MIT",
    description="Multiple-walker Adaptive Biasing Force sampling on collective variable grids",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    keywords=[
        "computational chemistry",
        "molecular dynamics",
        "free energy",
        "adaptive biasing force",
    ],
    install_requires=[
        "numpy>=1.19.5",
        "scipy>=1.7.0",
    ],
    extras_require={
        "mpi": ["mpi4py>=3.0"],
        "test": ["pytest"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.8",
    ],
    zip_safe=False,
)
