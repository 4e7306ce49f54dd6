import sys

from os import path
from setuptools import setup

if sys.version_info < (3,9):
    sys.exit("The current Python version is less than 3.9. Exiting.")

requirements_filepath = path.join(path.dirname(path.abspath(__file__)), "requirements.txt")
requirements = open(requirements_filepath).read().split()

setup(name='entrair',
      version='1.0.0',
      description='Entra ID incident response collector',
      classifiers=[
          'Intended Audience :: Information Technology',
          'Programming Language :: Python :: 3.9',
          'Programming Language :: Python :: 3.10',
          'Programming Language :: Python :: 3.11',
          'Programming Language :: Python :: 3.12',
          'Programming Language :: Python :: 3.13',
      ],
      packages=['entrair'],
      python_requires='>=3.9',
      install_requires=requirements,
      extras_require={
          'test': ['pytest'],
      },
      zip_safe=False,
      include_package_data=True,
      entry_points={
          'console_scripts': ['entrair=entrair.main:main']
      }
    )
