"""
Name: snirouter
Description: SNI based TCP router for loopback TLS backends managed by x-ui
License: BSD
Classifiers:
    License :: OSI Approved :: BSD License
    Topic :: Internet :: Proxy Servers
    Environment :: Console
    Operating System :: POSIX :: Linux
    Intended Audience :: System Administrators
    Programming Language :: Python :: 3.12
"""
