#!/usr/bin/env python
""" A document-style query layer with SqlAlchemy as a back-end """

from setuptools import setup, find_packages

setup(
    name='docquery',
    version='1.0.0',

    license='BSD',
    description=__doc__,
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    keywords=['sqlalchemy', 'mongodb', 'asyncio', 'json'],

    packages=find_packages(exclude=('tests',)),
    scripts=[],
    entry_points={},

    python_requires='>= 3.8',
    install_requires=[
        'sqlalchemy[asyncio] >= 2.0',
        'pydantic-settings >= 2.0',
    ],
    extras_require={
        'sqlite': ['aiosqlite'],
        'mssql': ['aioodbc'],
        'mysql': ['aiomysql'],
        'test': ['pytest', 'pytest-cov', 'aiosqlite', 'nox'],
    },
    include_package_data=True,

    platforms='any',
    classifiers=[
        # https://pypi.python.org/pypi?%3Aaction=list_classifiers
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Natural Language :: English',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Framework :: AsyncIO',
        'Topic :: Database',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
)
