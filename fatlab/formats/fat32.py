'''
FAT32 image structures. Read-mostly FAT32 image accessor.
'''
import logging

import vstruct2.types as v_types

from fatlab.filelab import FileLab


logger = logging.getLogger(__name__)


class Fat32Exception(Exception):
    '''
    base for every user-visible, recoverable error raised by fatlab.
    '''
    pass


class CorruptFileSystemError(Fat32Exception):
    '''
    an error occured while validating existing structures from the file system.
    '''
    pass


class FileDoesNotExistException(Fat32Exception):
    pass


class NotADirectoryException(Fat32Exception):
    pass


class IllegalArgumentException(Fat32Exception, ValueError):
    pass


# size of the boot sector holding the BIOS parameter block
BOOT_SECTOR_SIZE = 0x200

# size of an entry in the FAT32 directory data
FILE_ENTRY_SIZE = 0x20

# size of an entry in the FAT32 file allocation table
FAT_ENTRY_SIZE = 0x4

# mask of usable bits in a file allocation table entry
FAT_ENTRY_MASK = 0x0FFFFFFF

# the number of bytes reserved for 8.3 filenames
DIR_NAME_SIZE = 11

# first byte of the name of a deleted directory entry
DELETED_MARKER = 0xE5

# (mask, bad cluster, first end-of-chain value) per consulted FAT entry width.
# a width of 16 only reads the low half of each 4 byte entry.
FAT_ENTRY_LAYOUTS = {
    16: (0xFFFF, 0xFFF7, 0xFFF8),
    32: (FAT_ENTRY_MASK, 0x0FFFFFF7 & FAT_ENTRY_MASK, 0x0FFFFFF8 & FAT_ENTRY_MASK),
}

# directory entry attributes. bit flags.
DIRECTORY_ATTRIBUTES = v_types.venum()
DIRECTORY_ATTRIBUTES.ATTR_READ_ONLY = 0x1
DIRECTORY_ATTRIBUTES.ATTR_HIDDEN = 0x2
DIRECTORY_ATTRIBUTES.ATTR_SYSTEM = 0x4
DIRECTORY_ATTRIBUTES.ATTR_VOLUME_ID = 0x8
DIRECTORY_ATTRIBUTES.ATTR_DIRECTORY = 0x10
DIRECTORY_ATTRIBUTES.ATTR_ARCHIVE = 0x20

# entries are listed only when their attribute byte is exactly one of these.
# compound values (hidden|system, long name fragments, ...) are skipped.
VISIBLE_ATTRIBUTES = (
    DIRECTORY_ATTRIBUTES.ATTR_READ_ONLY,
    DIRECTORY_ATTRIBUTES.ATTR_DIRECTORY,
    DIRECTORY_ATTRIBUTES.ATTR_ARCHIVE,
)

# where tombstone/restore persist the working directory table
WRITEBACK = v_types.venum()
WRITEBACK.ROOT = 0
WRITEBACK.CURRENT = 1


# via: https://staff.washington.edu/dittrich/misc/fatgen103.pdf
class BIOS_PARAMETER_BLOCK_FAT32(v_types.VStruct):
    '''
    always found at the first logical sector of the FAT32 file system.

    specifies the geometry of the file system, including things like:
      - sector and cluster size
      - locations of the allocation tables and the root directory
      - file system label
    '''
    def __init__(self):
        super(BIOS_PARAMETER_BLOCK_FAT32, self).__init__()
        # for interpretation of these fields, please see:
        #  https://staff.washington.edu/dittrich/misc/fatgen103.pdf
        self.BPB_jmpBoot = v_types.vbytes(size=3)
        self.BPB_OEMName = v_types.vbytes(size=8)
        self.BPB_BytsPerSec = v_types.uint16()
        self.BPB_SecPerClus = v_types.uint8()
        self.BPB_RsvdSecCnt = v_types.uint16()
        self.BPB_NumFATs = v_types.uint8()
        self.BPB_RootEntCnt = v_types.uint16()
        self.BPB_TotSec16 = v_types.uint16()
        self.BPB_Media = v_types.uint8()
        self.BPB_FATSz16 = v_types.uint16()
        self.BPB_SecPerTrk = v_types.uint16()
        self.BPB_NumHeads = v_types.uint16()
        self.BPB_HiddSec = v_types.uint32()
        self.BPB_TotSec32 = v_types.uint32()

        # begin FAT32-specific fields
        # offset 36
        self.BPB_FATSz32 = v_types.uint32()
        self.BPB_ExtFlags = v_types.uint16()
        self.BPB_FSVer = v_types.uint16()
        self.BPB_RootClus = v_types.uint32()
        self.BPB_FSInfo = v_types.uint16()
        self.BPB_BkBootSec = v_types.uint16()
        self.BPB_Reserved = v_types.vbytes(size=12)
        self.BPB_DrvNum = v_types.uint8()
        self.BPB_Reserved1 = v_types.uint8()
        self.BPB_BootSig = v_types.uint8()
        self.BPB_VolID = v_types.uint32()
        # offset 71
        self.BPB_VolLab = v_types.vbytes(size=11)
        self.BPB_FilSysType = v_types.vbytes(size=8)
        self.BPB_BootCode = v_types.vbytes(size=420)
        self.EndOfSectorMarker = v_types.uint16()

    def validate(self):
        '''
        raise CorruptFileSystemError if the geometry fields are implausible.
        '''
        if int(self.BPB_BytsPerSec) not in (512, 1024, 2048, 4096):
            raise CorruptFileSystemError('invalid BPB_BytsPerSec: %d' % int(self.BPB_BytsPerSec))

        spc = int(self.BPB_SecPerClus)
        if spc == 0 or spc > 128 or spc & (spc - 1) != 0:
            raise CorruptFileSystemError('invalid BPB_SecPerClus: %d' % spc)


# via: https://staff.washington.edu/dittrich/misc/fatgen103.pdf
class DIRECTORY_ENTRY(v_types.VStruct):
    '''
    single entry in a directory data run.
    length is 32 bytes on FAT32.
    '''
    def __init__(self):
        super(DIRECTORY_ENTRY, self).__init__()
        # 8 bytes of ASCII for the basename, 3 bytes for the extension.
        # period is implicit. left-justified, space padded.
        self.DIR_Name = v_types.vbytes(size=DIR_NAME_SIZE)
        self.DIR_Attr = v_types.uint8(enum=DIRECTORY_ATTRIBUTES)
        self.DIR_NTRes = v_types.vbytes(size=1)
        self.DIR_CrtTimeTenth = v_types.vbytes(size=1)
        self.DIR_CrtTime = v_types.vbytes(size=2)
        self.DIR_CrtDate = v_types.vbytes(size=2)
        self.DIR_LstAccDate = v_types.vbytes(size=2)
        self.DIR_FstClusHI = v_types.uint16()
        self.DIR_WrtTime = v_types.vbytes(size=2)
        self.DIR_WrtDate = v_types.vbytes(size=2)
        self.DIR_FstClusLO = v_types.uint16()
        self.DIR_FileSize = v_types.uint32()

    @property
    def raw_name(self):
        '''
        the 11 name bytes exactly as stored.

        rtype: bytes
        '''
        return bytes(self.DIR_Name)

    @property
    def short_name(self):
        '''
        the 11 character space padded name, without the implicit period.
        '''
        return self.raw_name.decode('latin-1')

    @property
    def name(self):
        '''
        reconstruct the dotted 8.3 name for this directory entry.
        '''
        name = self.raw_name[:0x8].rstrip(b' ')
        ext = self.raw_name[0x8:].rstrip(b' ')
        if len(ext) > 0:
            name = name + b'.' + ext
        return name.decode('latin-1').partition('\x00')[0]

    @property
    def attributes(self):
        return int(self.DIR_Attr)

    @property
    def size(self):
        return int(self.DIR_FileSize)

    @property
    def is_deleted(self):
        return self.raw_name[0] == DELETED_MARKER

    @property
    def is_directory(self):
        return self.attributes & DIRECTORY_ATTRIBUTES.ATTR_DIRECTORY != 0

    @property
    def is_visible(self):
        '''
        is this entry a plain read-only file, directory or archive that is not deleted?
        '''
        return self.attributes in VISIBLE_ATTRIBUTES and not self.is_deleted

    @property
    def first_cluster(self):
        '''
        get the full 32 bit cluster number of the data for this entry.

        rtype: int
        '''
        return (int(self.DIR_FstClusHI) << 16) | int(self.DIR_FstClusLO)

    def __str__(self):
        if self.is_deleted:
            return 'DIRECTORY_ENTRY (deleted: %s)' % (self.name[1:])
        return 'DIRECTORY_ENTRY (name: %s)' % (self.name)


class DIRECTORY_DATA(v_types.VArray):
    '''
    On disk, a sequence of DIRECTORY_ENTRYs read from a single cluster.
    '''
    def __init__(self, num_entries):
        '''
        param num_entries: the number of DIRECTORY_ENTRYs that should be found in this region.
        type num_entries: int
        '''
        super(DIRECTORY_DATA, self).__init__(fields=[DIRECTORY_ENTRY() for _ in range(num_entries)])
        self.num_entries = num_entries

    @property
    def entries(self):
        '''
        the DIRECTORY_ENTRYs in this DIRECTORY_DATA, in on-disk order.

        rtype: Sequence[DIRECTORY_ENTRY]
        '''
        for i in range(self.num_entries):
            yield self[i]


def normalize83(text):
    '''
    expand user input into the 11 byte on-disk short name layout.
    returns None if the input can never match a short name.

    example:
      normalize83('foo.txt') == b'FOO     TXT'

    type text: str
    rtype: bytes
    '''
    base, _, ext = text.partition('.')
    if len(base) > 8:
        return None

    expanded = base.ljust(8, ' ') + ext[:3].ljust(3, ' ')
    return expanded.upper().encode('latin-1', errors='replace')


def matchName(text, raw_name):
    '''
    does the user supplied name refer to the given raw 11 byte name?

    matching is case insensitive and padding insensitive.
    input starting with '..' matches any name starting with '..'.

    type text: str
    type raw_name: bytes
    rtype: bool
    '''
    raw_name = bytes(raw_name)[:DIR_NAME_SIZE]
    if text.startswith('..'):
        return raw_name.startswith(b'..')

    if text == '.':
        return raw_name == b'.'.ljust(DIR_NAME_SIZE, b' ')

    return normalize83(text) == raw_name


def listEntries(dir_data):
    '''
    yield the visible entries of a directory table in on-disk order.

    type dir_data: DIRECTORY_DATA
    rtype: Sequence[DIRECTORY_ENTRY]
    '''
    for entry in dir_data.entries:
        if entry.is_visible:
            yield entry


def findEntry(dir_data, text):
    '''
    get the first entry (of any attribute) whose current name matches.

    type dir_data: DIRECTORY_DATA
    type text: str
    rtype: DIRECTORY_ENTRY
    '''
    for entry in dir_data.entries:
        if matchName(text, entry.raw_name):
            return entry
    raise FileDoesNotExistException('File not found: %s' % text)


class VolumeGeometry:
    '''
    the geometry of a FAT32 volume as read from its boot sector.
    immutable once constructed, and translates cluster numbers to byte offsets.

    the default cluster stride is one sector, which is what a volume with
     one sector per cluster uses. set `whole_clusters` to stride by
     sectors-per-cluster sectors instead.
    '''
    def __init__(self, bpb, whole_clusters=False):
        '''
        type bpb: BIOS_PARAMETER_BLOCK_FAT32
        type whole_clusters: bool
        '''
        self._bytes_per_sector = int(bpb.BPB_BytsPerSec)
        self._sectors_per_cluster = int(bpb.BPB_SecPerClus)
        self._reserved_sector_count = int(bpb.BPB_RsvdSecCnt)
        self._num_fats = int(bpb.BPB_NumFATs)
        self._root_entry_count = int(bpb.BPB_RootEntCnt)
        self._fat_size = int(bpb.BPB_FATSz32)
        self._root_cluster = int(bpb.BPB_RootClus)
        self._oem_name = bytes(bpb.BPB_OEMName).decode('latin-1').rstrip(' \x00')
        self._volume_label = bytes(bpb.BPB_VolLab).decode('latin-1').rstrip(' \x00')
        self._whole_clusters = whole_clusters

    @property
    def bytes_per_sector(self):
        return self._bytes_per_sector

    @property
    def sectors_per_cluster(self):
        return self._sectors_per_cluster

    @property
    def reserved_sector_count(self):
        return self._reserved_sector_count

    @property
    def num_fats(self):
        return self._num_fats

    @property
    def root_entry_count(self):
        return self._root_entry_count

    @property
    def fat_size(self):
        '''
        size of each allocation table in sectors.
        '''
        return self._fat_size

    @property
    def root_cluster(self):
        return self._root_cluster

    @property
    def oem_name(self):
        return self._oem_name

    @property
    def volume_label(self):
        return self._volume_label

    @property
    def cluster_size(self):
        '''
        the number of bytes read per cluster by the directory and content readers.
        '''
        if self._whole_clusters:
            return self._bytes_per_sector * self._sectors_per_cluster
        return self._bytes_per_sector

    @property
    def fat_offset(self):
        '''
        byte offset of the first allocation table.
        '''
        return self._bytes_per_sector * self._reserved_sector_count

    @property
    def data_offset(self):
        '''
        byte offset of cluster 2, the first data cluster.
        '''
        return self.fat_offset + self._num_fats * self._fat_size * self._bytes_per_sector

    @property
    def fat_entry_count(self):
        '''
        number of entries in each allocation table.
        '''
        return (self._fat_size * self._bytes_per_sector) // FAT_ENTRY_SIZE

    @property
    def entries_per_cluster(self):
        return self.cluster_size // FILE_ENTRY_SIZE

    def clusterToOffset(self, cluster_num):
        '''
        get the byte offset of the given cluster in the image.
        cluster 2 is the first data cluster.

        type cluster_num: int
        rtype: int
        '''
        return (cluster_num - 2) * self.cluster_size + self.data_offset

    def fatEntryOffset(self, cluster_num):
        '''
        get the byte offset of the given cluster's entry in the first allocation table.

        type cluster_num: int
        rtype: int
        '''
        return self.fat_offset + cluster_num * FAT_ENTRY_SIZE

    def __str__(self):
        return 'VolumeGeometry (oem: %s label: %s bps: %d spc: %d)' % (
                self._oem_name, self._volume_label, self._bytes_per_sector, self._sectors_per_cluster)


class Fat32Image(FileLab):
    '''
    an API for walking cluster chains and reading directory tables and file
     contents from a FAT32 image opened as a file object.

    no bounds checking is done against the allocation table or the image size:
     garbage geometry or chains read back whatever bytes the offset math lands on.
    '''
    def __init__(self, fd, off=0, fat_width=16, whole_clusters=False, validate=False):
        '''
        param fat_width: the number of bits consulted in FAT entries and first cluster fields (16 or 32).
        param whole_clusters: stride clusters by sectors-per-cluster sectors, rather than one sector.
        param validate: raise CorruptFileSystemError on implausible boot sector geometry.
        '''
        if fat_width not in FAT_ENTRY_LAYOUTS:
            raise IllegalArgumentException('unsupported FAT entry width: %r' % (fat_width,))

        FileLab.__init__(self, fd, off=off)
        self.fat_width = fat_width
        self.whole_clusters = whole_clusters
        self.validate = validate

        self.add('bpb', self._getBpb)
        self.add('geometry', self._getGeometry)

    def _getBpb(self):
        bpb = self.getStruct(0, BIOS_PARAMETER_BLOCK_FAT32, size=BOOT_SECTOR_SIZE)
        if self.validate:
            bpb.validate()
        return bpb

    def _getGeometry(self):
        geom = VolumeGeometry(self['bpb'], whole_clusters=self.whole_clusters)
        logger.debug('fat: geometry: %s', geom)
        return geom

    @property
    def geometry(self):
        '''
        rtype: VolumeGeometry
        '''
        return self['geometry']

    def getFirstCluster(self, entry):
        '''
        get the first cluster of the entry's data, honoring the configured width.

        type entry: DIRECTORY_ENTRY
        rtype: int
        '''
        if self.fat_width == 32:
            return entry.first_cluster
        return int(entry.DIR_FstClusLO)

    def nextCluster(self, cluster_num):
        '''
        fetch the successor of the given cluster from the first allocation table.
        no end-of-chain interpretation is done here.

        rtype: int
        '''
        mask, _, _ = FAT_ENTRY_LAYOUTS[self.fat_width]
        off = self.geometry.fatEntryOffset(cluster_num)
        if self.fat_width == 32:
            entry = self.getStruct(off, v_types.uint32, size=4)
        else:
            entry = self.getStruct(off, v_types.uint16, size=2)

        nxt = int(entry) & mask
        logger.debug('fat: next cluster: %x -> %x', cluster_num, nxt)
        return nxt

    def isChainEnd(self, cluster_num):
        '''
        is the given value a free, reserved, bad, or end-of-chain marker
         rather than a usable data cluster?
        '''
        _, bad, last = FAT_ENTRY_LAYOUTS[self.fat_width]
        return cluster_num < 2 or cluster_num == bad or cluster_num >= last

    def getClusterChain(self, start_cluster_num, limit=None):
        '''
        get the list of data clusters that make up a cluster run.
        stops at the first marker, or after `limit` clusters (default: the FAT entry count)
         so that a looping chain can't run forever.

        rtype: List[int]
        '''
        if limit == None:
            limit = self.geometry.fat_entry_count

        ret = []
        cluster_num = start_cluster_num
        while not self.isChainEnd(cluster_num) and len(ret) < limit:
            ret.append(cluster_num)
            cluster_num = self.nextCluster(cluster_num)
        return ret

    def getDirectoryData(self, cluster_num):
        '''
        get *a copy* of the directory table stored in the given cluster.
        only a single cluster is read.

        rtype: DIRECTORY_DATA
        '''
        geom = self.geometry
        num_entries = geom.entries_per_cluster
        logger.debug('directory data: load: cluster: %x entries: %d', cluster_num, num_entries)
        return self.getStruct(geom.clusterToOffset(cluster_num), DIRECTORY_DATA, num_entries,
                size=num_entries * FILE_ENTRY_SIZE)

    def setDirectoryData(self, cluster_num, dir_data):
        '''
        commit the directory table to the given cluster.

        type dir_data: DIRECTORY_DATA
        '''
        off = self.geometry.clusterToOffset(cluster_num)
        logger.debug('directory data: store: cluster: %x offset: %x', cluster_num, off)
        self.writeAtOff(off, dir_data.vsEmit())

    def readWhole(self, entry, strict=False):
        '''
        fetch the contents of the file described by the entry.
        the declared file size is the ground truth for the amount of data returned.

        in strict mode an early end of the cluster chain stops the copy,
         otherwise the chain is followed wherever it leads.

        type entry: DIRECTORY_ENTRY
        rtype: bytes
        '''
        geom = self.geometry
        cluster_size = geom.cluster_size
        remaining = entry.size
        if remaining == 0 or cluster_size == 0:
            return b''

        cluster_num = self.getFirstCluster(entry)
        logger.debug('content: read whole: start: %x len: %x', cluster_num, remaining)

        data = []
        while remaining > cluster_size:
            if strict and self.isChainEnd(cluster_num):
                logger.debug('content: chain ended early: %x', cluster_num)
                return b''.join(data)

            data.append(self.readAtOff(geom.clusterToOffset(cluster_num), cluster_size, shortok=True))
            remaining -= cluster_size
            cluster_num = self.nextCluster(cluster_num)

        if strict and self.isChainEnd(cluster_num):
            logger.debug('content: chain ended early: %x', cluster_num)
            return b''.join(data)

        data.append(self.readAtOff(geom.clusterToOffset(cluster_num), remaining, shortok=True))
        return b''.join(data)

    def readRange(self, entry, position, length, strict=False):
        '''
        fetch `length` bytes of the file described by the entry, starting at `position`.

        the permissive (default) mode does not consult the declared file size:
         reads past the end of file continue through whatever the FAT says
         comes next. strict mode clips the read to the declared size and stops
         at end-of-chain markers.

        type entry: DIRECTORY_ENTRY
        type position: int
        type length: int
        rtype: bytes
        '''
        if position < 0 or length < 0:
            raise IllegalArgumentException('position and length must not be negative')

        geom = self.geometry
        cluster_size = geom.cluster_size
        if strict:
            length = max(0, min(length, entry.size - position))

        if length == 0 or cluster_size == 0:
            return b''

        cluster_num = self.getFirstCluster(entry)
        logger.debug('content: read range: start: %x pos: %x len: %x', cluster_num, position, length)

        # locate the cluster holding the first requested byte
        while position >= cluster_size:
            if strict and self.isChainEnd(cluster_num):
                logger.debug('content: chain ended early: %x', cluster_num)
                return b''

            position -= cluster_size
            cluster_num = self.nextCluster(cluster_num)

        data = []
        while length > 0:
            if strict and self.isChainEnd(cluster_num):
                logger.debug('content: chain ended early: %x', cluster_num)
                break

            count = min(length, cluster_size - position)
            data.append(self.readAtOff(geom.clusterToOffset(cluster_num) + position, count, shortok=True))
            length -= count
            position = 0
            if length > 0:
                cluster_num = self.nextCluster(cluster_num)

        return b''.join(data)


def parseGeometry(fd, whole_clusters=False, validate=False):
    '''
    read the volume geometry from the boot sector of an image.
    a non-FAT32 image yields garbage geometry, not an error, unless `validate` is set.

    rtype: VolumeGeometry
    '''
    return Fat32Image(fd, whole_clusters=whole_clusters, validate=validate).geometry
