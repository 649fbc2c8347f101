from titan_zfs.main import main as main
