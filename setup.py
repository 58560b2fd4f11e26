import setuptools

setuptools.setup(
    name="qMRtool",
    version="0.1.0",
    author="Edwin Bennink, Frank W.H. Otto",
    author_email="H.E.Bennink@umcutrecht.nl",
    description="qMRtool: quantitative MRI protocol optimization, simulation and fitting",
    packages=setuptools.find_packages(exclude=['tests*', 'scripts*']),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: Other/Proprietary License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha"
    ],
    python_requires='>=3.8',
    install_requires=[
        'numpy>=1.24',
        'scipy>=1.9',
        'tabulate>=0.9',
        'numba>=0.58',
        'tqdm>=4.66',
        'pandas>=2.0',
        'matplotlib>=3.7',
        'nibabel>=5.0',
    ],
    extras_require={
        'testing': ['pytest>=7.0'],
    }
)
