from typing import List


def get_pool_mountpoints(mount_output: str, pool: str) -> List[str]:
    """Extract mountpoints belonging to a pool from `mount -t zfs` output

    Args:
        mount_output: Output lines of the form "<source> on <dir> type zfs (<opts>)"
        pool: Pool name; the pool itself and every child dataset match

    Returns:
        Mountpoints sorted in reverse, so children come before their parents
    """

    def belongs_to_pool(source: str) -> bool:
        return source == pool or source.startswith(pool + '/')

    mountpoints: List[str] = []
    for line in mount_output.splitlines():
        fields = line.split()
        if len(fields) < 3 or not belongs_to_pool(fields[0]):
            continue
        mountpoints.append(fields[2])

    return sorted(mountpoints, reverse=True)
