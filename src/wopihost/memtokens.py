'''
memtokens.py

In-memory token store for the WOPI host. Sessions only live as long as the process,
and are not shared across instances of the service: this store is meant for
development and for the test suite.
'''

import threading
import secrets
import wopihost.wopiutils as utils

# module-wide state
config = None
log = None
sessions = {}
_lock = threading.Lock()


def init(inconfig, inlog):
    '''Init module-level variables'''
    global config               # pylint: disable=global-statement
    global log                  # pylint: disable=global-statement
    config = inconfig
    log = inlog
    with _lock:
        sessions.clear()


def resolve(token):
    '''Looks up the given token and returns the corresponding session, or None if unknown or expired.
    Expired sessions are not purged here, the lookup has no side effects.'''
    with _lock:
        session = sessions.get(token)
    if not session:
        log.info(f'msg="Unknown access token" token="{utils.shorttoken(token)}"')
        return None
    if session.expiration < utils.nowEpoch():
        log.info(f'msg="Expired access token" token="{utils.shorttoken(token)}" expiration="{session.expiration}"')
        return None
    return session


def mint(fileid, version, attributes, serverhost, owner, editor):
    '''Creates and stores a new session for the given file and identities'''
    exptime = utils.nowEpoch() + config.getint('general', 'tokenvalidity')
    with _lock:
        token = secrets.token_urlsafe(32)
        while token in sessions:
            token = secrets.token_urlsafe(32)
        session = utils.SessionRecord(token, fileid, version, owner, editor,
                                      utils.Attributes(attributes), serverhost, exptime)
        sessions[token] = session
    log.info('msg="Access token generated" fileid="%s" version="%d" owner="%s" editor="%s" attributes="%s" '
             'serverhost="%s" expiration="%d" token="%s"' %
             (fileid, version, owner, editor, session.attributes, serverhost, exptime, utils.shorttoken(token)))
    return session


def purge():
    '''Drops all expired sessions, returns how many were dropped'''
    now = utils.nowEpoch()
    with _lock:
        expired = [t for t, s in sessions.items() if s.expiration < now]
        for t in expired:
            del sessions[t]
    if expired:
        log.debug(f'msg="Purged expired sessions" count="{len(expired)}"')
    return len(expired)
