from setuptools import setup, find_packages

setup(
    name="jobex",
    version="0.1.0",
    description="Document extraction job orchestration: admission control, progress, partial results and cancellation",
    packages=find_packages(include=['jobex', 'jobex.*']),
    package_data={
        'jobex': ['config/default_config.yaml'],
    },
    python_requires='>=3.9',
    install_requires=[
        'pdfminer.six',
        'pyyaml',
        'sqlalchemy>=1.4',
        'click'
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio'
        ]
    },
    entry_points={
        'console_scripts': [
            'jobex=jobex.cli:cli',
        ],
    }
)
