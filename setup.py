from setuptools import setup, find_packages

setup(name='petkfit', version='0.0.1', packages=find_packages(exclude=['tests', 'tests.*']),
      install_requires=['numpy', 'scipy', 'numba', 'pandas'],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['petkfit-voxel-fit = petkfit.cli.cli_voxel_fitting:main',
                                        'petkfit-tac-calc = petkfit.cli.cli_tac_calc:main'], }, )
