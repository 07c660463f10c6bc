'''
jwttokens.py

Token store for the WOPI host based on JSON Web Tokens: the session record is
carried by the token itself, signed with the WOPI secret, therefore no server-side
persistence is required and any instance of the service can resolve any token.
'''

import secrets
import jwt
import wopihost.wopiutils as utils

# module-wide state
config = None
log = None
secret = None

# the issuer claim of the tokens minted here
ISSUER = 'wopihost'


def init(inconfig, inlog):
    '''Init module-level variables'''
    global config               # pylint: disable=global-statement
    global log                  # pylint: disable=global-statement
    global secret               # pylint: disable=global-statement
    config = inconfig
    log = inlog
    with open(config.get('security', 'wopisecretfile')) as s:
        secret = s.read().strip('\n')
    if not secret:
        raise ValueError('Empty WOPI secret')


def resolve(token):
    '''Decodes and validates the given token, and returns the corresponding session or None
    if the token is malformed, tampered with or expired'''
    try:
        claims = jwt.decode(token, secret, algorithms=['HS256'], options={'require': ['exp', 'iss']})
        if not claims['iss'].startswith(ISSUER + ':'):
            raise jwt.exceptions.InvalidIssuerError(claims['iss'])
        return utils.SessionRecord(
            token=token,
            fileid=claims['fileid'],
            version=int(claims['version']),
            owner=claims['owner'],
            editor=claims['editor'] or None,
            attributes=utils.Attributes(claims['attributes']),
            serverhost=claims['serverhost'],
            expiration=claims['exp'],
        )
    except (jwt.exceptions.InvalidTokenError, KeyError, ValueError, TypeError) as e:
        log.info(f'msg="Invalid access token" token="{utils.shorttoken(token)}" details="{type(e).__name__}: {e}"')
        return None


def mint(fileid, version, attributes, serverhost, owner, editor):
    '''Generates a new access token for the given file and identities'''
    exptime = utils.nowEpoch() + config.getint('general', 'tokenvalidity')
    claims = {
        'fileid': fileid, 'version': version, 'attributes': int(attributes), 'serverhost': serverhost,
        'owner': owner, 'editor': editor,
        'exp': exptime, 'iss': f'{ISSUER}:{utils.WOPIVER}', 'jti': secrets.token_hex(8)    # standard claims
    }
    token = jwt.encode(claims, secret, algorithm='HS256')
    log.info('msg="Access token generated" fileid="%s" version="%d" owner="%s" editor="%s" attributes="%s" '
             'serverhost="%s" expiration="%d" token="%s"' %
             (fileid, version, owner, editor, utils.Attributes(attributes), serverhost, exptime, utils.shorttoken(token)))
    return utils.SessionRecord(token, fileid, version, owner, editor, utils.Attributes(attributes), serverhost, exptime)
