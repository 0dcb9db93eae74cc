# initrdtools

Command-line tools and a small library for working with initramfs images:
listing and extracting their contents, copying files together with their
dependencies into a staging directory, and finding kernel modules that match
a set of rules.

An initramfs may consist of several concatenated `newc` cpio archives, each
of them optionally compressed with gzip, bzip2, xz or zstd, and may carry an
appended bootconfig block. All of these are recognised. Streams whose magic
marks them as lzma, lzo or lz4 are recognised but cannot be decompressed.

## Installation

```
pip install .
```

Requires Python 3.10 or newer. zstd support comes from the `zstandard`
package; gzip, bzip2 and xz are handled by the standard library.

## Commands

### initrd-ls

List the contents of an initramfs in a format similar to `ls -l`:

```
initrd-ls /boot/initrd.img
initrd-ls --brief /boot/initrd.img        # one line per archive part
initrd-ls --name /boot/initrd.img         # file names only
initrd-ls -C --no-mtime /boot/initrd.img  # show compression, hide mtime
```

Each line starts with the number of the archive part the entry comes from.

### initrd-extract

Write the contents of an initramfs back out as a single uncompressed cpio
archive, optionally selecting one of its parts (numbered from 1):

```
initrd-extract -o full.cpio /boot/initrd.img
initrd-extract --archive=2 --output=second.cpio /boot/initrd.img
```

Without `-o` the archive is written to standard output.

### initrd-put

Copy files and directories into a destination directory, following symbolic
links, script interpreters and the shared-library dependencies of dynamic
ELF binaries (as reported by `ldd`):

```
initrd-put /tmp/root /bin/sh /etc/passwd
initrd-put --dry-run /tmp/root /usr/bin/ls
initrd-put -r /usr/local --log=put.log /tmp/root /usr/local/bin/tool
```

Options: `-n/--dry-run` prints what would be copied, `-f/--force`
overwrites existing files, `-l/--log=FILE` appends a log of what was
copied, `-r/--remove-prefix=PATH` strips a prefix from destination paths,
`-v/--verbose` (repeatable) reports each action.

### initrd-scanmod

Print the paths of kernel modules under `<basedir>/lib/modules/<version>`
that match one or more rules files:

```
initrd-scanmod -k 6.1.0 rules.txt
initrd-scanmod --base-dir=/mnt/sysroot rules.txt
```

Without `-k` the running kernel's release is used. Modules named `.ko`,
`.ko.gz` or `.ko.xz` are examined; their `.modinfo` section and symbol
tables are read directly from the ELF file.

A rules file holds one rule per line: a keyword (`alias`, `author`,
`depends`, `description`, `filename`, `firmware`, `license`, `name`,
`symbol`) followed by an extended regular expression. Prefixing the keyword
with `not-` turns the rule into an exclusion. Lines starting with `#` are
comments.

```
# storage controllers
alias ^pci:
symbol ^scsi_
not-name ^dummy
```

## Library use

```python
from initrdtools.parse import read_initrd
from initrdtools.cpio import CpioType

with open("/boot/initrd.img", "rb") as f:
    result = read_initrd(f.read())

for part in result.cpios:
    if part.type is CpioType.ARCHIVE:
        for header in part.headers:
            print(part.compress, header.name)
```

`initrdtools.cpio.write_cpio` and `write_trailer` write entries and the
end-of-archive marker to a binary stream; `initrdtools.extract.extract`
uses them to write a parsed image out as one archive.

## What is not included

There is no command that builds a new cpio archive from a text list of
files, directories and device nodes. Archives can only be written from
entries already parsed out of an image, or from `CpioHeader` objects built
in code and passed to `write_cpio`.

## Running the tests

```
pip install .[test]
pytest
```