#! /usr/bin/env python3

import sys
import os
from setuptools import setup

assert 0x03060000 <= sys.hexversion, \
    "Install Python, version 3.6 or greater"

URL = 'https://github.com/git-commit-mailer/git-commit-mailer'


def read_version():
    sys.path.insert(0, os.path.join('git-commit-mailer'))
    import git_commit_mailer
    return git_commit_mailer.__version__


def read_readme():
    with open(os.path.join('git-commit-mailer', 'README')) as f:
        return f.read()

setup(
    name='git-commit-mailer',
    version=read_version(),
    description='Send a notification email for every commit pushed to a Git repository',
    long_description=read_readme(),
    classifiers=[
        'Development Status :: 5 - Production/Stable',
        'Environment :: No Input/Output (Daemon)',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v2 (GPLv2)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Topic :: Communications :: Email',
        'Topic :: Software Development :: Version Control',
        ],
    keywords='git hook email diff',
    url=URL,
    license='GPLv2',
    python_requires='>=3.6',
    package_dir={'': 'git-commit-mailer'},
    py_modules=['git_commit_mailer'],
    extras_require={
        'test': ['pytest'],
        },
    )
