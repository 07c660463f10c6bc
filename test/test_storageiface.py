'''
test_storageiface.py

Basic unit testing of the local storage interface, run against a temporary storage root.
'''

import unittest
import logging
import configparser
import sys
import os
import io
import shutil
import tempfile
from werkzeug.exceptions import ClientDisconnected
sys.path.append('src')         # for tests out of the git repo
import wopihost.localiface as storage    # noqa: E402
from wopihost.commoniface import EXCL_ERROR, ENOENT_MSG, ACCESS_ERROR, encodefileid, decodefileid  # noqa: E402

databuf = b'ebe5tresbsrdthbrdhvdtr'


class BrokenStream(io.BytesIO):
    '''A stream that fails after the first chunk, as when a client disconnects while uploading'''
    def __init__(self, *args):
        super().__init__(*args)
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        if self.reads > 1:
            raise ClientDisconnected()
        return super().read(size)


class TestStorage(unittest.TestCase):
    '''Simple tests for the local storage layer of the WOPI host'''

    def setUp(self):
        '''Creates a storage root with a personal folder for alice and bob'''
        self.log = logging.getLogger('wopiserver.test')
        self.homepath = tempfile.mkdtemp()
        config = configparser.ConfigParser()
        config.read_dict({'local': {'storagehomepath': self.homepath}, 'io': {'chunksize': '8'}})
        storage.init(config, self.log)
        for user in ('alice', 'bob'):
            os.makedirs(os.path.join(self.homepath, user, 'files'))
        with open(os.path.join(self.homepath, 'alice/files/test.txt'), 'wb') as f:
            f.write(databuf)
        self.fileid = encodefileid('/alice/files/test.txt')

    def tearDown(self):
        shutil.rmtree(self.homepath)

    def _readall(self, handle):
        content = b''
        for chunk in handle.read():
            self.assertNotIsInstance(chunk, IOError)
            content += chunk
        return content

    def test_init_nodir(self):
        '''Initialization must fail if the storage root is not a folder'''
        config = configparser.ConfigParser()
        config.read_dict({'local': {'storagehomepath': os.path.join(self.homepath, 'alice/files/test.txt')}})
        with self.assertRaises(IOError):
            storage.init(config, self.log)

    def test_healthcheck(self):
        self.assertEqual(storage.healthcheck(), 'OK')

    def test_fileid(self):
        '''Fileids must be invertible and never contain the document id separator'''
        self.assertEqual(decodefileid(self.fileid), '/alice/files/test.txt')
        self.assertNotIn('_', encodefileid('/alice/files/my_file_v2.odt'))
        with self.assertRaises(IOError) as context:
            decodefileid('nothex')
        self.assertIn(ENOENT_MSG, str(context.exception))

    def test_stat(self):
        '''Get a handle and assert the metadata matches'''
        f = storage.getfilehandle(self.fileid, 'alice', 'bob')
        self.assertEqual(f.name, 'test.txt')
        self.assertEqual(f.path, '/alice/files/test.txt')
        self.assertEqual(f.size, len(databuf))
        self.assertAlmostEqual(f.mtime, os.stat(os.path.join(self.homepath, 'alice/files/test.txt')).st_mtime)
        self.assertTrue(f.isparentcreatable())

    def test_stat_nofile(self):
        '''Get a handle to a non-existing file and assert the exception is as expected'''
        with self.assertRaises(IOError) as context:
            storage.getfilehandle(encodefileid('/alice/files/hopefullynotexisting'), 'alice', None)
        self.assertIn(ENOENT_MSG, str(context.exception))

    def test_stat_folder(self):
        '''A folder is not a file'''
        with self.assertRaises(IOError) as context:
            storage.getfilehandle(encodefileid('/alice/files'), 'alice', None)
        self.assertEqual(ACCESS_ERROR, str(context.exception))
        os.makedirs(os.path.join(self.homepath, 'alice/files/sub'))
        with self.assertRaises(IOError) as context:
            storage.getfilehandle(encodefileid('/alice/files/sub'), 'alice', None)
        self.assertIn(ENOENT_MSG, str(context.exception))

    def test_access_outside_user_folders(self):
        '''A file is only accessible from the owner's or the editor's folder'''
        with open(os.path.join(self.homepath, 'bob/files/bob.txt'), 'wb') as f:
            f.write(databuf)
        bobsfile = encodefileid('/bob/files/bob.txt')
        self.assertEqual(storage.getfilehandle(bobsfile, 'alice', 'bob').name, 'bob.txt')
        with self.assertRaises(IOError) as context:
            storage.getfilehandle(bobsfile, 'alice', 'carol')
        self.assertEqual(ACCESS_ERROR, str(context.exception))
        with self.assertRaises(IOError) as context:
            storage.getfilehandle(encodefileid('/alice/files/../../bob/files/bob.txt'), 'alice', None)
        self.assertEqual(ACCESS_ERROR, str(context.exception))

    def test_readfile(self):
        '''Reads a file in chunks, validating that the content matches'''
        f = storage.getfilehandle(self.fileid, 'alice', None)
        chunks = list(f.read())
        self.assertEqual(len(chunks), 3)
        self.assertEqual(b''.join(chunks), databuf)

    def test_readfile_empty(self):
        '''Reads an empty file, validating that the read does not fail'''
        storage.newfile('/alice/files/empty.txt')
        f = storage.getfilehandle(encodefileid('/alice/files/empty.txt'), 'alice', None)
        self.assertEqual(list(f.read()), [])

    def test_read_nofile(self):
        '''Test reading of a file removed after getting its handle'''
        f = storage.getfilehandle(self.fileid, 'alice', None)
        os.remove(os.path.join(self.homepath, 'alice/files/test.txt'))
        chunk = next(f.read())
        self.assertIsInstance(chunk, IOError)
        self.assertIn(ENOENT_MSG, str(chunk))

    def test_putcontent(self):
        '''Overwrites a file, validating that the content matches and no temporary file is left'''
        f = storage.getfilehandle(self.fileid, 'alice', 'bob')
        f.putcontent(io.BytesIO(b'blabla\n' * 10))
        self.assertEqual(self._readall(f), b'blabla\n' * 10)
        self.assertEqual(os.listdir(os.path.join(self.homepath, 'alice/files')), ['test.txt'])

    def test_putcontent_interrupted(self):
        '''A failing upload must leave the original content untouched'''
        f = storage.getfilehandle(self.fileid, 'alice', 'bob')
        with self.assertRaises(ClientDisconnected):
            f.putcontent(BrokenStream(b'blabla\n' * 10))
        self.assertEqual(self._readall(f), databuf)
        self.assertEqual(os.listdir(os.path.join(self.homepath, 'alice/files')), ['test.txt'])

    def test_newfile(self):
        '''Creates a file, and asserts that a second creation fails'''
        self.assertFalse(storage.nodeexists('/alice/files/new.odt'))
        fileid = storage.newfile('/alice/files/new.odt')
        self.assertTrue(storage.nodeexists('/alice/files/new.odt'))
        self.assertEqual(storage.getfilehandle(fileid, 'alice', None).size, 0)
        with self.assertRaises(IOError) as context:
            storage.newfile('/alice/files/new.odt')
        self.assertIn(EXCL_ERROR, str(context.exception))

    def test_removefile(self):
        '''Creates and removes a file, and asserts that removing it again fails'''
        storage.newfile('/alice/files/new.odt')
        storage.removefile('/alice/files/new.odt')
        self.assertFalse(storage.nodeexists('/alice/files/new.odt'))
        with self.assertRaises(IOError) as context:
            storage.removefile('/alice/files/new.odt')
        self.assertIn(ENOENT_MSG, str(context.exception))

    def test_newfolder(self):
        '''Creates nested folders, twice'''
        storage.newfolder('/bob/files/a/b')
        self.assertTrue(storage.nodeexists('/bob/files/a/b'))
        storage.newfolder('/bob/files/a/b')
        storage.newfile('/bob/files/a/b/c.odt')
        self.assertTrue(storage.nodeexists('/bob/files/a/b/c.odt'))


if __name__ == '__main__':
    unittest.main()
