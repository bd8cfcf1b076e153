from setuptools import setup, find_packages

setup(name='petkmap', version='0.1.0', packages=find_packages(include=['petkmap', 'petkmap.*']),
      python_requires='>=3.9',
      install_requires=['numpy', 'numba', 'pandas', 'nibabel'],
      extras_require={'test': ['pytest', 'scipy']},
      entry_points={'console_scripts': ['petkmap-tcm-fit = petkmap.cli.cli_tac_fitting:main',
                                        'petkmap-parametric-image = petkmap.cli.cli_parametric_images:main'], }, )
