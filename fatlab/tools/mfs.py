import os
import sys
import logging
import argparse

import fatlab.mfs as f_mfs
import fatlab.formats.fat32 as f_fat32

from fatlab.common import *

logger = logging.getLogger(__name__)

# commands are split on whitespace and only this many tokens are kept
MAX_NUM_ARGUMENTS = 5

PROMPT = 'mfs> '

writebacks = {
    'root': f_fat32.WRITEBACK.ROOT,
    'current': f_fat32.WRITEBACK.CURRENT,
}

class MfsShell:
    '''
    Line oriented front end for an MfsSession.

    Example:

        shell = MfsShell(MfsSession())
        shell.runCommand('open fat32.img')
        shell.runCommand('ls')

    '''
    def __init__(self, sess, out=None):
        self.sess = sess
        self.out = out
        if self.out == None:
            self.out = sys.stdout

        self.cmds = {
            'open': self._cmdOpen,
            'close': self._cmdClose,
            'info': self._cmdInfo,
            'stat': self._cmdStat,
            'get': self._cmdGet,
            'cd': self._cmdCd,
            'ls': self._cmdLs,
            'read': self._cmdRead,
            'del': self._cmdDel,
            'undel': self._cmdUndel,
        }

    def printf(self, msg):
        self.out.write(msg + '\n')

    def runCommand(self, line):
        '''
        Run one command line.  Returns False once the shell should exit.
        '''
        toks = line.split()[:MAX_NUM_ARGUMENTS]
        if not toks:
            return True

        name = toks[0]
        args = toks[1:]

        if name in ('quit','exit'):
            if self.sess.isOpen():
                self.sess.close()
            return False

        meth = self.cmds.get(name)
        if meth == None:
            self.printf('Error: Unknown command.')
            return True

        try:
            meth(args)
        except f_fat32.Fat32Exception as e:
            self.printf('Error: %s' % (e,))

        return True

    def cmdloop(self, fd):
        '''
        Prompt for and run commands from fd until quit/exit or EOF.
        '''
        while True:
            self.out.write(PROMPT)
            self.out.flush()

            line = fd.readline()
            if not line:
                self.printf('')
                self.runCommand('quit')
                return

            if not self.runCommand(line):
                return

    def _needArgs(self, args, count, msg='Filename not given.'):
        if len(args) < count:
            raise f_mfs.MissingArgumentException(msg)

    def _cmdOpen(self, args):
        self._needArgs(args, 1)
        self.sess.open(args[0])

    def _cmdClose(self, args):
        self.sess.close()

    def _cmdInfo(self, args):
        geom = self.sess.volumeInfo()
        fields = (
            ('BPB_BytsPerSec', geom.bytes_per_sector),
            ('BPB_SecPerClus', geom.sectors_per_cluster),
            ('BPB_RsvdSecCnt', geom.reserved_sector_count),
            ('BPB_NumFATS', geom.num_fats),
            ('BPB_FATSz32', geom.fat_size),
            ('BPB_RootClus', geom.root_cluster),
        )
        rows = [ (name, '%#x' % valu, str(valu)) for name,valu in fields ]
        self.printf( colify( rows, titles=('Field','Hex','Base10') ) )
        self.printf('OEM Name:     %s' % geom.oem_name)
        self.printf('Volume Label: %s' % geom.volume_label)

    def _cmdStat(self, args):
        self._needArgs(args, 1)
        entry = self.sess.findEntry(args[0])
        self.printf('Name:               %s' % entry.short_name)
        self.printf('Attribute:          %#x' % entry.attributes)
        self.printf('FirstClusterHigh:   %d' % int(entry.DIR_FstClusHI))
        self.printf('FirstClusterLow:    %d' % int(entry.DIR_FstClusLO))
        self.printf('FileSize:           %d' % entry.size)
        if not entry.is_directory and entry.size:
            chain = self.sess.getClusterChain(entry)
            self.printf('Clusters:           %s' % ' '.join([ str(c) for c in chain ]))

    def _cmdGet(self, args):
        self._needArgs(args, 1)
        data = self.sess.readWhole(args[0])

        dest = args[0]
        if len(args) > 1:
            dest = args[1]

        try:
            with open(dest, 'wb') as fd:
                fd.write(data)
        except OSError as e:
            raise f_fat32.IllegalArgumentException('Could not write %s: %s' % (dest, e.strerror))

        logger.debug('mfs: get: %s -> %s (%d bytes)', args[0], os.path.abspath(dest), len(data))

    def _cmdCd(self, args):
        self._needArgs(args, 1)
        self.sess.changeDirectory(args[0])

    def _cmdLs(self, args):
        for name in self.sess.listVisible():
            self.printf(name)

    def _cmdRead(self, args):
        self._needArgs(args, 3, msg='Not enough arguments. (%d given)' % len(args))
        try:
            position = int(args[1])
            length = int(args[2])
        except ValueError:
            raise f_fat32.IllegalArgumentException('Invalid position or length.')

        data = self.sess.readRange(args[0], position, length)
        self.printf(data.decode('latin-1'))

    def _cmdDel(self, args):
        self._needArgs(args, 1)
        self.sess.tombstone(args[0])

    def _cmdUndel(self, args):
        self._needArgs(args, 1)
        self.sess.restore(args[0])

def main(argv):

    p = argparse.ArgumentParser(description='interactive FAT32 image shell')
    p.add_argument('--strict', default=False, action='store_true', help='stop reads at declared file sizes and chain ends')
    p.add_argument('--writeback', default='root', choices=sorted(writebacks), help='where del/undel persist the directory table')
    p.add_argument('--fat-width', default=16, type=int, choices=(16,32), help='bits of FAT entries and cluster fields to consult')
    p.add_argument('--whole-clusters', default=False, action='store_true', help='stride clusters by sectors-per-cluster sectors')
    p.add_argument('--validate', default=False, action='store_true', help='reject implausible boot sector geometry')
    p.add_argument('-v', '--verbose', default=False, action='store_true', help='enable debug logging')
    p.add_argument('image', nargs='?', help='FAT32 image to open at startup')

    args = p.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    sess = f_mfs.MfsSession(strict=args.strict,
            writeback=writebacks[args.writeback],
            fat_width=args.fat_width,
            whole_clusters=args.whole_clusters,
            validate=args.validate)

    shell = MfsShell(sess)
    if args.image:
        try:
            sess.open(args.image)
        except f_fat32.Fat32Exception as e:
            shell.printf('Error: %s' % (e,))

    shell.cmdloop(sys.stdin)
    return 0

if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
