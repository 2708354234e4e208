'''
A session over a single open FAT32 image: the working directory view,
 the original name cache, and the tombstone/restore mutations.
'''
import logging
import contextlib

import fatlab.formats.fat32 as fat32

from fatlab.formats.fat32 import WRITEBACK


logger = logging.getLogger(__name__)


class SessionException(fat32.Fat32Exception):
    pass


class ImageUnreadableException(SessionException):
    pass


class AlreadyOpenException(SessionException):
    pass


class NotOpenException(SessionException):
    pass


class MissingArgumentException(fat32.IllegalArgumentException):
    '''
    a command was issued without one of its required parameters.
    '''
    pass


class DirectoryView:
    '''
    the currently active directory table, and the cluster it was loaded from.
    replaced wholesale on every successful change of directory.
    '''
    def __init__(self, cluster_number, dir_data):
        self.cluster_number = cluster_number
        self.dir_data = dir_data

    def __str__(self):
        return 'DirectoryView (cluster: %x entries: %d)' % (self.cluster_number, self.dir_data.num_entries)


class MfsSession:
    '''
    the boundary API used by the shell: open/close an image, list and
     navigate directories, read file content, and delete/undelete entries.

    only one image may be open at a time.
    every operation except `open` requires an open image.

    example:
      sess = MfsSession()
      sess.open('fat32.img')
      for name in sess.listVisible():
          print(name)
      sess.close()
    '''
    def __init__(self, strict=False, writeback=WRITEBACK.ROOT, fat_width=16, whole_clusters=False, validate=False):
        '''
        param strict: clip reads to declared file sizes and stop at chain end markers.
        param writeback: WRITEBACK.ROOT persists mutated tables at the root
         directory (regardless of the working directory), WRITEBACK.CURRENT
         persists them where they were loaded from.
        param fat_width: bits of FAT entries and first cluster fields consulted (16 or 32).
        param whole_clusters: stride clusters by sectors-per-cluster sectors, rather than one sector.
        param validate: reject implausible boot sector geometry on open.
        '''
        if writeback not in (WRITEBACK.ROOT, WRITEBACK.CURRENT):
            raise fat32.IllegalArgumentException('unsupported writeback target: %r' % (writeback,))

        if fat_width not in fat32.FAT_ENTRY_LAYOUTS:
            raise fat32.IllegalArgumentException('unsupported FAT entry width: %r' % (fat_width,))

        self.strict = strict
        self.writeback = writeback
        self.fat_width = fat_width
        self.whole_clusters = whole_clusters
        self.validate = validate

        self.path = None
        self._fd = None
        self._img = None
        self._view = None
        # cluster number -> raw names as first loaded, before any tombstoning
        self._orig_names = {}

    def isOpen(self):
        return self._img != None

    def _requireOpen(self):
        if not self.isOpen():
            raise NotOpenException('File system image must be opened first.')

    def open(self, path):
        '''
        open the image at the given path for reading and writing,
         and load its root directory as the working directory.
        '''
        if self.isOpen():
            raise AlreadyOpenException('File system image is already open.')

        try:
            fd = open(path, 'r+b')
        except OSError as e:
            logger.debug('mfs: open failed: %s: %s', path, e)
            raise ImageUnreadableException('File system image not found.')

        try:
            img = fat32.Fat32Image(fd, fat_width=self.fat_width,
                    whole_clusters=self.whole_clusters, validate=self.validate)
            root_cluster = img.geometry.root_cluster
        except Exception:
            fd.close()
            raise

        self.path = path
        self._fd = fd
        self._img = img
        self._orig_names = {}
        self._view = self._loadView(root_cluster)
        logger.info('mfs: opened: %s (%s)', path, img.geometry)

    def close(self):
        if not self.isOpen():
            raise NotOpenException('File system not open.')

        logger.info('mfs: closed: %s', self.path)
        self._fd.close()
        self.path = None
        self._fd = None
        self._img = None
        self._view = None
        self._orig_names = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        if self.isOpen():
            self.close()

    def _loadView(self, cluster_num):
        dir_data = self._img.getDirectoryData(cluster_num)
        if cluster_num not in self._orig_names:
            self._orig_names[cluster_num] = [entry.raw_name for entry in dir_data.entries]
        return DirectoryView(cluster_num, dir_data)

    def _writeView(self):
        if self.writeback == WRITEBACK.ROOT:
            cluster_num = self._img.geometry.root_cluster
        else:
            cluster_num = self._view.cluster_number

        logger.debug('mfs: write view: %s -> cluster: %x', self._view, cluster_num)
        self._img.setDirectoryData(cluster_num, self._view.dir_data)

    def _resolve(self, name):
        self._requireOpen()
        if isinstance(name, fat32.DIRECTORY_ENTRY):
            return name
        return self.findEntry(name)

    def volumeInfo(self):
        '''
        rtype: fat32.VolumeGeometry
        '''
        self._requireOpen()
        return self._img.geometry

    @property
    def cwd(self):
        '''
        the cluster number the working directory was loaded from.
        '''
        self._requireOpen()
        return self._view.cluster_number

    def getEntries(self):
        '''
        every entry of the working directory table, including invisible ones.

        rtype: List[fat32.DIRECTORY_ENTRY]
        '''
        self._requireOpen()
        return list(self._view.dir_data.entries)

    def listVisible(self):
        '''
        the dotted names of the visible entries in the working directory, in on-disk order.

        rtype: List[str]
        '''
        self._requireOpen()
        return [entry.name for entry in fat32.listEntries(self._view.dir_data)]

    def findEntry(self, name):
        '''
        rtype: fat32.DIRECTORY_ENTRY
        '''
        self._requireOpen()
        return fat32.findEntry(self._view.dir_data, name)

    def getClusterChain(self, name):
        '''
        the data clusters of the named entry, in chain order.

        rtype: List[int]
        '''
        entry = self._resolve(name)
        return self._img.getClusterChain(self._img.getFirstCluster(entry))

    def readWhole(self, name):
        '''
        type name: Union[str, fat32.DIRECTORY_ENTRY]
        rtype: bytes
        '''
        entry = self._resolve(name)
        return self._img.readWhole(entry, strict=self.strict)

    def readRange(self, name, position, length):
        '''
        type name: Union[str, fat32.DIRECTORY_ENTRY]
        rtype: bytes
        '''
        entry = self._resolve(name)
        return self._img.readRange(entry, position, length, strict=self.strict)

    def changeDirectory(self, name):
        '''
        replace the working directory with the named sub-directory (or '..').
        '''
        entry = self.findEntry(name)
        if not entry.is_directory:
            raise fat32.NotADirectoryException('Entry is not a directory.')

        cluster_num = self._img.getFirstCluster(entry)
        if cluster_num == 0:
            # '..' of a first level directory points at the root this way
            cluster_num = self._img.geometry.root_cluster

        self._view = self._loadView(cluster_num)
        logger.debug('mfs: cd: %s -> %s', name, self._view)

    def tombstone(self, name):
        '''
        mark the named entry of the working directory deleted, and persist the table.

        rtype: fat32.DIRECTORY_ENTRY
        '''
        entry = self.findEntry(name)
        entry.DIR_Name = bytes([fat32.DELETED_MARKER]) + entry.raw_name[1:]
        logger.debug('mfs: tombstone: %s', name)
        self._writeView()
        return entry

    def restore(self, name):
        '''
        put back the original first name byte of every visible-attribute entry
         whose original name matches, and persist the table.

        rtype: List[fat32.DIRECTORY_ENTRY]
        '''
        self._requireOpen()
        orig_names = self._orig_names[self._view.cluster_number]

        restored = []
        for i, entry in enumerate(self._view.dir_data.entries):
            if entry.attributes not in fat32.VISIBLE_ATTRIBUTES:
                continue

            orig_name = orig_names[i]
            if not fat32.matchName(name, orig_name):
                continue

            entry.DIR_Name = orig_name[:1] + entry.raw_name[1:]
            restored.append(entry)

        if not restored:
            raise fat32.FileDoesNotExistException('File not found: %s' % name)

        logger.debug('mfs: restore: %s (%d entries)', name, len(restored))
        self._writeView()
        return restored


@contextlib.contextmanager
def openImage(path, **opts):
    '''
    Utility wrapper for MfsSession that closes the image afterwards.

    example:
      with openImage('fat32.img', strict=True) as sess:
          data = sess.readWhole('FOO.TXT')
    '''
    sess = MfsSession(**opts)
    sess.open(path)
    try:
        yield sess
    finally:
        if sess.isOpen():
            sess.close()
