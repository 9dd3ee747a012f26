## @file setup.py
# This contains setup info for uki-secureboot-tools pip module
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import setuptools

with open("readme.md", "r") as fh:
    long_description = fh.read()


setuptools.setup(
    name="uki-secureboot-tools",
    version="0.1.0",
    author="UKI Secure Boot Tools team",
    description="Python tools for building signed Unified Kernel Images and Secure Boot keys",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license='BSD-2-Clause-Patent',
    packages=setuptools.find_packages(include=["ukitool", "ukitool.*"]),
    python_requires=">=3.9",
    include_package_data=True,
    entry_points={
        'console_scripts': ['uki_tool=ukitool.uki.uki_tool:main',
                            'sb_keys_tool=ukitool.secureboot.sb_keys_tool:main']
    },
    install_requires=[
        'pyyaml>=5.2',
        'edk2-pytool-library>=0.10.13',
        'pefile>=2019.4.18',
        'cryptography>=42.0.0'
    ],
    extras_require={
        'test': ['pytest']
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: POSIX :: Linux",
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators"
    ]
)
