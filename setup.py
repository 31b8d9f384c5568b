"""
Packaging for the socket forwarder.

Tests live beside the modules they cover, in *_test.py files, and are run with pytest:

    pip install -e .[test]
    pytest src
"""

from setuptools import setup, find_packages


setup(
    name='sockfwd',
    version='0.1.0',
    description='Forwards byte streams between TCP, unix domain and abstract namespace sockets.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    package_data={'sockfwd.config': ['*.cfg']},
    python_requires='>=3.9',
    install_requires=[
        'configobj>=5.0.6',
    ],
    extras_require={
        'test': ['PyHamcrest', 'pytest', 'timeout-decorator'],
    },
    entry_points={
        'console_scripts': ['sockfwd=sockfwd.cli:main'],
    },
    zip_safe=False,
)
