""" TLS context construction for broker connections. The broker's
    certificate is checked against a CA bundle in PEM format; a client
    certificate and private key may be supplied for mutual authentication.
"""

import ssl

import pika


def context(ca=None, cert=None, key=None, password=None,
            verify_hostname=False, verify=True):
    """ Return an :class:`ssl.SSLContext` suitable for a client connection.

        *ca* is the path to a PEM bundle of trusted certificate authorities;
        if it is None the system default trust store is used. *cert* and
        *key* are paths to a PEM client certificate and its private key; the
        key may be encrypted, in which case *password* is required. If *key*
        is None the private key is expected to be in the *cert* file.

        Setting *verify* to False disables certificate checking entirely;
        this is only appropriate against a test broker with a self-signed
        certificate.
    """

    tls = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    tls.minimum_version = ssl.TLSVersion.TLSv1_2

    if verify:
        tls.check_hostname = bool(verify_hostname)
        tls.verify_mode = ssl.CERT_REQUIRED

        if ca is None:
            tls.load_default_certs(ssl.Purpose.SERVER_AUTH)
        else:
            tls.load_verify_locations(cafile=ca)
    else:
        tls.check_hostname = False
        tls.verify_mode = ssl.CERT_NONE

    if cert is not None:
        tls.load_cert_chain(cert, keyfile=key, password=password)
    elif key is not None:
        raise ValueError('a client key requires a client certificate')

    return tls


def options(tls, server_hostname=None):
    """ Wrap an :class:`ssl.SSLContext` for use in
        :class:`pika.ConnectionParameters`.
    """

    return pika.SSLOptions(tls, server_hostname)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
