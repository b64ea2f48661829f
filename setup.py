import os
from tftpd import __name__, __version__
from setuptools import setup, find_packages

BASE = os.path.dirname(__file__)
with open(os.path.join(BASE, 'README.md'), encoding='utf-8') as fh:
    long_description = fh.read()


setup(
    name=__name__,
    version=__version__,
    description="Read-only TFTP server for network boot and provisioning",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="tftp udp pxe netboot",
    license='MIT',
    python_requires='>=3.8',
    packages=find_packages(exclude=('tests', 'tests.*')),
    zip_safe=False,
    entry_points={
        'console_scripts': [
            'tftpd=tftpd.cli:main',
        ],
    },
    install_requires=[
        'aiohttp>=3.7.4',
        'appdirs>=1.4.3',
        'prometheus_client>=0.7.1',
        'pyyaml>=5.3.1',
    ],
    extras_require={
        'lint': [
            'pylint'
        ],
        'test': [
            'coverage',
            'pytest',
        ],
    },
    classifiers=[
        'Framework :: AsyncIO',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
        'Topic :: Internet',
        'Topic :: System :: Boot',
        'Topic :: System :: Networking',
    ],
)
