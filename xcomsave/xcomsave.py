import json
import logging
import sys
from argparse import ArgumentParser
from pathlib import Path

from xcomsave import *


def print_prop(prop: Property, indent: int = 0) -> None:
    prefix = ' ' * indent
    print(f"{prefix}{prop}")
    if isinstance(prop, StructProperty):
        for f in prop.fields:
            print_prop(f, indent + 4)
    elif isinstance(prop, StaticArrayProperty):
        for element in prop:
            print_prop(element, indent + 4)


def print_save(save: SaveDocument) -> None:
    header = save.header
    print("Header:")
    print("Version:", header.version)
    print("Game/Save:", f"{header.game_number}/{header.save_number}")
    print("Description:", header.save_description)
    print("Time:", header.time)
    print("Map:", header.map_command)
    print("Flags:", f"tactical={header.tactical_save} ironman={header.ironman} autosave={header.auto_save}")
    print("DLC:", header.dlc_string)
    print("Language:", header.language)
    print(f"CRC: 0x{header.crc:08x}")

    print(f"Actor table ({len(save.actor_table)}):")
    for actor in save.actor_table:
        print(f"    {actor.name} #{actor.instance_num}")

    for i, chunk in enumerate(save.checkpoints):
        print(f"Checkpoint chunk {i}: game '{chunk.game_name}', map '{chunk.map_name}'")
        for checkpoint in chunk.checkpoint_table:
            print(f"    {checkpoint.name} ({checkpoint.class_name})")
            for prop in checkpoint.properties:
                print_prop(prop, 8)


def main() -> int:
    parser = ArgumentParser(prog="xcomsave",
                            description="Decode an XCOM save file")
    parser.add_argument('savefile', type=Path,
                        help='Path to the save file')
    parser.add_argument('--compression', '-c', default='lzo',
                        choices=sorted(DECOMPRESSORS),
                        help='Decompressor for the save body (default: lzo)')
    parser.add_argument('--dump', type=Path, default=None,
                        help='Write the decompressed body to this path')
    parser.add_argument('--json', action='store_true',
                        help='Print the decoded save as JSON')
    parser.add_argument('--debug', action='store_true',
                        help='Log decoding progress')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    options = DecodeOptions(compression=args.compression, dump_path=args.dump)
    try:
        save = read_savefile(args.savefile, options)
    except SaveFormatError as e:
        print(f"Error ({e.kind}): {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(document_tree(save), indent=2))
    else:
        print_save(save)
    return 0


if __name__ == '__main__':
    sys.exit(main())
