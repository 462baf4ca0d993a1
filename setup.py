from setuptools import setup
setup(name="binstore", version="0.1.0",
      description="Bin ragged keyed columns on access, out of core and in parallel. ",
      zip_safe=False,
      package_dir = {'binstore': 'binstore'},
      packages = [
        'binstore', 'binstore.tests'
      ],
      license="GPLv3",
      python_requires=">=3.8",
      install_requires=['numpy'],
      extras_require={'test': ['pytest']},
)
