from setuptools import setup, find_packages
from codecs import open

setup(
    name='oidchannel',
    version='0.1.0',
    description='OpenID protocol message channel. Both the Relying Party and the Provider side of versions 1 and 2 of the OpenID protocol.',
    long_description=open('README.md', encoding='utf-8').read(),
    license='Apache',
    keywords='openid consumer provider',

    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3',
    ],

    install_requires=['html5lib'],
    packages=find_packages(exclude=['examples', 'oidchannel.test']),
    test_suite='oidchannel.test.test_suite',
)
