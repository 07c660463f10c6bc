'''
test_tokenstores.py

Unit testing of the token store layers: in-memory sessions and JSON Web Tokens.
'''

import unittest
import logging
import configparser
import sys
import os
import tempfile
sys.path.append('src')         # for tests out of the git repo
import jwt                     # noqa: E402
import wopihost.wopiutils as utils    # noqa: E402
import wopihost.memtokens as memtokens    # noqa: E402
import wopihost.jwttokens as jwttokens    # noqa: E402

ATTRS = utils.Attributes.CAN_VIEW | utils.Attributes.CAN_UPDATE | utils.Attributes.CAN_PRINT


def _config(validity=3600, secretfile=''):
    config = configparser.ConfigParser()
    config.read_dict({'general': {'tokenvalidity': str(validity)},
                      'security': {'wopisecretfile': secretfile}})
    return config


class TestMemTokens(unittest.TestCase):
    '''Tests for the in-memory token store'''

    def setUp(self):
        self.log = logging.getLogger('wopiserver.test')
        memtokens.init(_config(), self.log)

    def test_mint_and_resolve(self):
        session = memtokens.mint('f1', 3, ATTRS, 'https://cloud.example.org', 'alice', 'bob')
        resolved = memtokens.resolve(session.token)
        self.assertEqual(resolved, session)
        self.assertEqual(resolved.fileid, 'f1')
        self.assertEqual(resolved.version, 3)
        self.assertEqual(resolved.owner, 'alice')
        self.assertEqual(resolved.editor, 'bob')
        self.assertIn(utils.Attributes.CAN_UPDATE, resolved.attributes)
        self.assertNotIn(utils.Attributes.CAN_EXPORT, resolved.attributes)

    def test_unique_tokens(self):
        tokens = {memtokens.mint('f1', 0, ATTRS, '', 'alice', 'bob').token for _ in range(50)}
        self.assertEqual(len(tokens), 50)

    def test_unknown(self):
        self.assertIsNone(memtokens.resolve('nonexisting'))

    def test_expired_and_purge(self):
        memtokens.init(_config(validity=-10), self.log)
        expired = memtokens.mint('f1', 0, ATTRS, '', 'alice', None)
        self.assertIsNone(memtokens.resolve(expired.token))
        # the lookup has no side effects
        self.assertIn(expired.token, memtokens.sessions)
        memtokens.config = _config()
        valid = memtokens.mint('f2', 0, ATTRS, '', 'alice', None)
        self.assertEqual(memtokens.purge(), 1)
        self.assertNotIn(expired.token, memtokens.sessions)
        self.assertEqual(memtokens.resolve(valid.token), valid)


class TestJwtTokens(unittest.TestCase):
    '''Tests for the JWT-based token store'''

    def setUp(self):
        self.log = logging.getLogger('wopiserver.test')
        fd, self.secretfile = tempfile.mkstemp()
        with os.fdopen(fd, 'w') as f:
            f.write('a-test-secret-of-a-reasonable-length\n')
        jwttokens.init(_config(secretfile=self.secretfile), self.log)

    def tearDown(self):
        os.remove(self.secretfile)

    def test_mint_and_resolve(self):
        session = jwttokens.mint('f1', 2, ATTRS, 'https://cloud.example.org', 'alice', 'bob')
        resolved = jwttokens.resolve(session.token)
        self.assertEqual(resolved, session)
        self.assertEqual(resolved.attributes, ATTRS)

    def test_remote_editor(self):
        session = jwttokens.mint('f1', 0, ATTRS, '', 'alice', None)
        self.assertIsNone(jwttokens.resolve(session.token).editor)

    def test_unique_tokens(self):
        t1 = jwttokens.mint('f1', 0, ATTRS, '', 'alice', 'bob').token
        t2 = jwttokens.mint('f1', 0, ATTRS, '', 'alice', 'bob').token
        self.assertNotEqual(t1, t2)

    def test_expired(self):
        jwttokens.config = _config(validity=-10)
        session = jwttokens.mint('f1', 0, ATTRS, '', 'alice', 'bob')
        self.assertIsNone(jwttokens.resolve(session.token))

    def test_tampered(self):
        session = jwttokens.mint('f1', 0, ATTRS, '', 'alice', 'bob')
        claims = jwt.decode(session.token, options={'verify_signature': False})
        claims['attributes'] = int(ATTRS | utils.Attributes.CAN_EXPORT)
        forged = jwt.encode(claims, 'another-secret-of-a-reasonable-length', algorithm='HS256')
        self.assertIsNone(jwttokens.resolve(forged))
        self.assertIsNone(jwttokens.resolve('not.a.token'))

    def test_foreign_issuer(self):
        claims = {'fileid': 'f1', 'version': 0, 'attributes': int(ATTRS), 'serverhost': '',
                  'owner': 'alice', 'editor': 'bob', 'exp': utils.nowEpoch() + 3600, 'iss': 'someoneelse'}
        token = jwt.encode(claims, jwttokens.secret, algorithm='HS256')
        self.assertIsNone(jwttokens.resolve(token))

    def test_empty_secret(self):
        with open(self.secretfile, 'w') as f:
            f.write('')
        with self.assertRaises(ValueError):
            jwttokens.init(_config(secretfile=self.secretfile), self.log)


if __name__ == '__main__':
    unittest.main()
