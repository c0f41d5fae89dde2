#!/usr/bin/env python

from setuptools import setup, find_packages
from os import path

this_directory = path.abspath(path.dirname(__file__))
with open(path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

requirements = [
    'urllib3',
    'aiohttp>=3.6.0',  # For async segment fetches
]

test_requirements = [
    'pytest>=3',
    'pytest-asyncio>=0.10.0',
]

setup(
    name='splitflag',
    version='0.1.0',
    author="SplitFlag",
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Natural Language :: English',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
    description="Feature flag and experiment decisions from a v4 datafile",
    long_description=long_description,
    long_description_content_type='text/markdown',
    install_requires=requirements,
    extras_require={'test': test_requirements},
    license="MIT",
    include_package_data=True,
    packages=find_packages(include=['splitflag', 'splitflag.*']),
    keywords='feature-flags experiments',
    test_suite='tests',
    tests_require=test_requirements,
)
