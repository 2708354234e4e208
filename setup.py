#!/usr/bin/env python
from setuptools import setup,find_packages

# For Testing:
#
# python3 -m unittest discover -s fatlab/tests -t .
#
# For Realz:
#
# python3 setup.py bdist_wheel
# python3 -m pip install dist/fatlab-*.whl

import fatlab

setup(
    name='fatlab',
    version='.'.join( str(v) for v in fatlab.__version__ ),
    description='FAT32 image parsers and an interactive image shell',
    license='Apache License 2.0',

    packages=find_packages(exclude=['*.tests','*.tests.*']),

    install_requires=[
        'vstruct2>=2.0.2',
    ],

    extras_require={
        'test': ['pytest'],
    },

    classifiers=[
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3',
    ],

)
