#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-directoryservice',
    version='1.0.0',
    description='Find, create and modify LDAP entries across several directories by naming convention',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'directory'],
    packages=find_packages(exclude=['bin', 'directoryservice.tests']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'django',
        'pytz',
        'ldap_filter',
        'pyasn1',
        'python-ldap',
    ],
    extras_require={
        'test': [
            'pytest',
            'python-ldap-faker',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
