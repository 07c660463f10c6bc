'''
The protocol core of the WOPI host: token stores, storage gateways, path handling
and the WOPI operations themselves.
'''
