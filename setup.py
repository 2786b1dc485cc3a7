import setuptools


def long_description():
    with open('README.md', 'r') as file:
        return file.read()


setuptools.setup(
    name='stream-zip-writer',
    version='0.0.1',
    author='Department for International Trade',
    author_email='sre@digital.trade.gov.uk',
    description='Python asyncio class to construct a ZIP archive entry by entry onto an append-only writer',
    long_description=long_description(),
    long_description_content_type='text/markdown',
    url='https://github.com/uktrade/stream-zip',
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Topic :: System :: Archiving :: Compression',
    ],
    python_requires='>=3.9',
    install_requires=[
        'pycryptodome>=3.10.1',
    ],
    extras_require={
        'test': [
            'pytest>=7.2.0',
            'pyzipper>=0.3.6',
            'stream-unzip>=0.0.86',
        ],
    },
    py_modules=[
        'stream_zip_writer',
    ],
)
