"""Migration sources: the driver interface and registry, the file name index, and the file, tree, S3, asset and stub drivers."""