#!/usr/bin/env python
from setuptools import setup

with open('README.md') as f:
    desc = f.read()

tests_require = [
    'pytest',
]

setup(
    name='eeManage',
    version='0.1.0',
    description='Python wrapper for managing assets and tasks on Google Earth Engine.',
    long_description=desc,
    long_description_content_type='text/markdown',
    license='MIT',
    packages=['eeManage'],
    python_requires='>=3.8',
    install_requires=[
        'earthengine-api>=0.1.232',
        'pandas',
    ],
    tests_require=tests_require,
    extras_require={
        'test': tests_require,
    },
)
